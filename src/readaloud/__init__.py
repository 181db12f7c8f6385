"""
readaloud package initialization.

The CLI entry point is exposed via `readaloud.cli:main`; embedders drive a
`ReaderSession` directly.
"""

from .cli import main
from .session import ReaderSession

__all__ = ["main", "ReaderSession"]
