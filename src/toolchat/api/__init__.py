"""HTTP API for toolchat."""

from .server import HeaderIdentityProvider, create_app

__all__ = ["HeaderIdentityProvider", "create_app"]
