"""
CLI layer for spindle.

Provides a Typer application whose commands delegate to
``spindle.orchestration``. This package handles only terminal transport:
argument parsing, coloured output, and table formatting.

Entry point::

    spindle --help
"""

from spindle.cli.app import app

__all__ = ["app"]
