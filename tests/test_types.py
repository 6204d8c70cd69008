"""
Tests for entity helpers in kindling.types.
"""

from kindling.types import Pin, is_pin_active


NOW = 1_700_000_000_000


def _pin(expires_at):
    return Pin("p1", "observation", "o1", created_at=NOW - 1000, expires_at=expires_at)


class TestPinActive:
    """A pin is active iff it has no expiry or expires strictly after now."""

    def test_no_expiry_is_active(self):
        assert is_pin_active(_pin(None), NOW)

    def test_expiring_after_now_is_active(self):
        assert is_pin_active(_pin(NOW + 1), NOW)

    def test_expired_before_now_is_inactive(self):
        assert not is_pin_active(_pin(NOW - 1), NOW)

    def test_expiring_exactly_now_is_inactive(self):
        assert not is_pin_active(_pin(NOW), NOW)
