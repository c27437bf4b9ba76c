"""Mock remote authority for development and tests."""
