"""
Namespaced Redis key helpers.

Keys are prefixed with SERVER_DOMAIN to avoid collisions when multiple
deployments share a Redis cluster.
"""

from pushline.config import settings


def subscriptions_key() -> str:
    """Hash of push endpoint → JSON-encoded key material."""
    return f"{settings.SERVER_DOMAIN}:push:subscriptions"
