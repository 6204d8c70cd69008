"""
Configuration management for kindling stores.

The configuration is stored as a TOML file in the store directory. It names
the database file and sets retrieval and engine defaults.
"""

import os
import tomllib
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

# tomli_w for writing TOML (tomllib is read-only)
try:
    import tomli_w
except ImportError:
    tomli_w = None  # type: ignore


CONFIG_FILENAME = "kindling.toml"
CONFIG_VERSION = 1
DEFAULT_DATABASE = "kindling.db"
STORE_PATH_ENV = "KINDLING_STORE_PATH"


@dataclass
class RetrievalConfig:
    """Retrieval defaults used when a request does not specify them."""
    token_budget: Optional[int] = None
    max_candidates: int = 10
    max_results: int = 50


@dataclass
class StoreConfig:
    """Complete store configuration."""
    path: Path
    version: int = CONFIG_VERSION
    created: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    database: str = DEFAULT_DATABASE
    busy_timeout_ms: int = 5000
    retrieval: RetrievalConfig = field(default_factory=RetrievalConfig)

    @property
    def config_path(self) -> Path:
        """Path to the TOML config file."""
        return self.path / CONFIG_FILENAME

    @property
    def database_path(self) -> Path:
        """Database file; relative names resolve inside the store directory."""
        db = Path(self.database).expanduser()
        return db if db.is_absolute() else self.path / db

    def exists(self) -> bool:
        return self.config_path.exists()


def get_default_store_path() -> Path:
    """Store directory from KINDLING_STORE_PATH, else ~/.kindling."""
    env = os.environ.get(STORE_PATH_ENV)
    if env:
        return Path(env).expanduser().resolve()
    return Path.home() / ".kindling"


def load_config(store_path: Path) -> StoreConfig:
    """
    Load configuration from a store directory.

    Raises:
        FileNotFoundError: If config doesn't exist
        ValueError: If config is invalid
    """
    config_path = store_path / CONFIG_FILENAME
    if not config_path.exists():
        raise FileNotFoundError(f"Config not found: {config_path}")

    with open(config_path, "rb") as f:
        data = tomllib.load(f)

    store = data.get("store", {})
    version = store.get("version", 1)
    if version > CONFIG_VERSION:
        raise ValueError(f"Config version {version} is newer than supported ({CONFIG_VERSION})")

    retrieval = data.get("retrieval", {})
    token_budget = retrieval.get("token_budget")
    if token_budget is not None and (not isinstance(token_budget, int) or token_budget <= 0):
        raise ValueError(f"retrieval.token_budget must be a positive integer, got {token_budget!r}")
    max_candidates = retrieval.get("max_candidates", 10)
    if not isinstance(max_candidates, int) or max_candidates <= 0:
        raise ValueError(f"retrieval.max_candidates must be a positive integer, got {max_candidates!r}")

    engine = data.get("engine", {})
    return StoreConfig(
        path=store_path,
        version=version,
        created=store.get("created", ""),
        database=store.get("database", DEFAULT_DATABASE),
        busy_timeout_ms=int(engine.get("busy_timeout_ms", 5000)),
        retrieval=RetrievalConfig(
            token_budget=token_budget,
            max_candidates=max_candidates,
            max_results=int(retrieval.get("max_results", 50)),
        ),
    )


def save_config(config: StoreConfig) -> None:
    """
    Save configuration to the store directory.

    Creates the directory if it doesn't exist.
    """
    if tomli_w is None:
        raise RuntimeError("tomli_w is required to save config. Install with: pip install tomli-w")

    config.path.mkdir(parents=True, exist_ok=True)

    retrieval = {
        "max_candidates": config.retrieval.max_candidates,
        "max_results": config.retrieval.max_results,
    }
    # TOML has no null; an unset budget is simply omitted
    if config.retrieval.token_budget is not None:
        retrieval["token_budget"] = config.retrieval.token_budget

    data = {
        "store": {
            "version": config.version,
            "created": config.created,
            "database": config.database,
        },
        "retrieval": retrieval,
        "engine": {"busy_timeout_ms": config.busy_timeout_ms},
    }
    with open(config.config_path, "wb") as f:
        tomli_w.dump(data, f)


def load_or_create_config(store_path: Path) -> StoreConfig:
    """
    Load existing config or create a new one with defaults.

    This is the main entry point for config management.
    """
    if (store_path / CONFIG_FILENAME).exists():
        return load_config(store_path)
    config = StoreConfig(path=store_path)
    save_config(config)
    return config
