"""Resolve repositories, find workspaces, build tasks and report progress for batch changes."""

__version__ = "0.1.0"

__all__ = ["diffstat", "events", "interval_writer", "service", "util", "workspaces"]