"""
ITIL Change HTTP API
"""

from .app import app, create_app
from .dependencies import ServiceContainer, get_actor, get_services

__all__ = ["app", "create_app", "ServiceContainer", "get_actor", "get_services"]
