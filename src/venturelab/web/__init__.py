"""
HTTP surface for the step pipeline.

Provides:
- Step processing endpoint used for self-chaining
- Cron endpoint sweeping stale runs
- Read-only run status
"""

from .server import create_app

__all__ = ["create_app"]
