"""
Tests for the constants and errors modules.

Tests utility functions like format_wait_display and sanitize_error_message.
"""

from ordergate.constants import format_wait_display
from ordergate.errors import (
    DuplicateMappingError,
    GENERIC_ERROR_MESSAGES,
    MappingNotFoundError,
    sanitize_error_message,
)


class TestFormatWaitDisplay:
    def test_formats_minutes_when_wait_is_60_or_more(self):
        """Test that waits >= 60 seconds are rounded up to minutes."""
        assert format_wait_display(60) == "1 minute"
        assert format_wait_display(61) == "2 minutes"
        assert format_wait_display(300) == "5 minutes"

    def test_formats_seconds_when_wait_is_less_than_60(self):
        """Test that waits < 60 seconds are shown in seconds."""
        assert format_wait_display(1) == "1 second"
        assert format_wait_display(30) == "30 seconds"
        assert format_wait_display(59) == "59 seconds"


class TestSanitizeErrorMessage:
    def test_known_contexts(self):
        for context, message in GENERIC_ERROR_MESSAGES.items():
            assert sanitize_error_message(context) == message

    def test_unknown_context_maps_to_api(self):
        assert sanitize_error_message("database") == GENERIC_ERROR_MESSAGES["api"]

    def test_default_is_order(self):
        assert sanitize_error_message() == GENERIC_ERROR_MESSAGES["order"]


class TestErrorHierarchy:
    def test_integrity_errors_are_value_errors(self):
        assert issubclass(DuplicateMappingError, ValueError)
        assert issubclass(MappingNotFoundError, ValueError)
