"""Web interface for the accident monitor."""

from .app import SafeguardWebApp, create_app

__all__ = ['SafeguardWebApp', 'create_app']
