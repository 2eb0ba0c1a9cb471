"""Provider clients for the dailysync engine.

Each client implements the ProviderClient ABC and handles:
- Consent (is the provider connected for this user)
- Token refresh against the provider's OAuth2 endpoint
- Fetching and decoding raw records for a time window

Available clients:
    WhoopClient — WHOOP Developer API v2 (OAuth2)
    OuraClient  — Oura API v2 (OAuth2 / Personal Token)
"""

from src.metric_sync.adapters.oura import OuraClient
from src.metric_sync.adapters.whoop import WhoopClient

__all__ = [
    "OuraClient",
    "WhoopClient",
]

# Registry: source_id → client class
PROVIDER_REGISTRY: dict[str, type] = {
    "whoop": WhoopClient,
    "oura": OuraClient,
}


def get_provider(source_id: str) -> "type":
    """Return the provider client class for a given source slug.

    Args:
        source_id: e.g. 'whoop', 'oura'

    Returns:
        The client class (not an instance).

    Raises:
        KeyError: If the source_id is not registered.
    """
    if source_id not in PROVIDER_REGISTRY:
        raise KeyError(
            f"No provider registered for source '{source_id}'. "
            f"Available: {list(PROVIDER_REGISTRY)}"
        )
    return PROVIDER_REGISTRY[source_id]
