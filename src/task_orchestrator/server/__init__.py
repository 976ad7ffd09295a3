"""HTTP surface for the task orchestrator (requires the ``server`` extra)."""

from .api import create_app

__all__ = ["create_app"]
