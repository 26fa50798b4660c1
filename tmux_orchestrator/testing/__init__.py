"""Testing utilities for tmux_orchestrator.

This package provides an in-memory executor for unit testing without
requiring a tmux server.
"""

from tmux_orchestrator.testing.mock_executor import MockExecutor, MockPane

__all__ = [
    "MockExecutor",
    "MockPane",
]
