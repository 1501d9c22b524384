"""taskbeat CLI (``taskbeat schedule list|run|work|test|next``)."""

from taskbeat.cli.app import app

__all__ = ["app"]
