"""Worktree MCP: disposable git worktrees with supervised processes."""

__version__ = "0.1.0"

__all__ = ["__version__"]
