"""Shared test fixtures and configuration."""

import pytest
from unittest.mock import MagicMock, patch

from flowrunner.files import InMemoryFileProvider


@pytest.fixture(autouse=True)
def mock_display_adapter():
    """Auto-mock the display adapter for all tests.

    This prevents actual terminal output during tests and provides
    a consistent mock interface for display operations.
    """
    mock_display = MagicMock()
    mock_display.console = MagicMock()

    with patch("flowrunner.display_adapter.DisplayAdapter.get_instance", return_value=mock_display):
        with patch("flowrunner.display_adapter.get_display", return_value=mock_display):
            # Modules that imported get_display directly
            with patch("flowrunner.reconciler.get_display", return_value=mock_display):
                with patch("flowrunner.runner.get_display", return_value=mock_display):
                    with patch("flowrunner.cli.get_display", return_value=mock_display):
                        yield mock_display


@pytest.fixture
def make_files():
    """Build an InMemoryFileProvider from a {path: text} mapping."""

    def _make(files):
        return InMemoryFileProvider(files)

    return _make
