# Channel Integrations Package
from .base import BaseChannelClient
from .shopify import ShopifyClient
from .trendyol import TrendyolClient
from .basit_kargo import BasitKargoClient

__all__ = [
    "BaseChannelClient",
    "ShopifyClient",
    "TrendyolClient",
    "BasitKargoClient",
]


def get_channel_client(provider: str, settings: dict, timeout: float = 30.0) -> BaseChannelClient:
    """Sales-channel client for an integration provider"""
    clients = {
        ShopifyClient.PLATFORM_NAME: ShopifyClient,
        TrendyolClient.PLATFORM_NAME: TrendyolClient,
    }
    if provider not in clients:
        raise ValueError(f"Unsupported sales channel: {provider}")
    return clients[provider](settings, timeout=timeout)
