"""HTTP clients for data providers."""

from biodiversity_ingest.clients.base import HTTPClientBase
from biodiversity_ingest.clients.ipt import IptClient, ProviderSource, load_provider_sources

__all__ = [
    "HTTPClientBase",
    "IptClient",
    "ProviderSource",
    "load_provider_sources",
]
