"""Virtual cameras, a virtual microphone and nested phone environments."""

from __future__ import annotations

from typing import Optional, Sequence

from .app.master import __version__, main
from .app.master import run as _run


def run(argv: Optional[Sequence[str]] = None) -> int:
    """Convenience wrapper that runs the async entry point and returns its exit status."""
    return _run(list(argv) if argv is not None else None)


__all__ = ["__version__", "main", "run"]
