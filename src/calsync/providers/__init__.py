"""Provider client registry."""

from __future__ import annotations

import httpx

from calsync.config import CalsyncConfig
from calsync.models import Provider
from calsync.providers.base import ProviderClient, TokenSource
from calsync.providers.github import GitHubProvider
from calsync.providers.google import GoogleProvider

PROVIDER_CLASSES: dict[Provider, type[ProviderClient]] = {
    Provider.google: GoogleProvider,
    Provider.github: GitHubProvider,
}


def build_providers(
    config: CalsyncConfig,
    http_client: httpx.AsyncClient | None = None,
) -> dict[Provider, ProviderClient]:
    """Instantiate one client per provider, sharing ``http_client`` when given."""
    return {
        provider: cls(
            config.provider_app(provider),
            http_client,
            timeout_s=config.sync.provider_timeout_s,
        )
        for provider, cls in PROVIDER_CLASSES.items()
    }


__all__ = [
    "PROVIDER_CLASSES",
    "GitHubProvider",
    "GoogleProvider",
    "ProviderClient",
    "TokenSource",
    "build_providers",
]
