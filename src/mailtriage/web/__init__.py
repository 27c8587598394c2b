"""HTTP API for the mail triage engine.

Usage:
    from mailtriage.web import create_app

    app = create_app()
"""

from mailtriage.web.app import create_app

__all__ = ["create_app"]
