"""Device-cloud adapters.

An adapter implements ``DeviceCloudAdapter`` for one vendor cloud: the OAuth2
authorization URL, code exchange and refresh, measurement group fetches and
push-notification subscription.  The pipeline picks the adapter named by the
``provider`` key of the provider config.
"""

from src.wearables.adapters.withings import WithingsAdapter
from src.wearables.base import DeviceCloudAdapter
from src.wearables.errors import ConfigurationError

__all__ = ["WithingsAdapter", "get_adapter"]

ADAPTER_REGISTRY: dict[str, type[DeviceCloudAdapter]] = {
    WithingsAdapter.SOURCE_ID: WithingsAdapter,
}


def get_adapter(source_id: str) -> type[DeviceCloudAdapter]:
    """Return the adapter class for a provider slug.

    Raises:
        ConfigurationError: If no adapter handles ``source_id``.
    """
    try:
        return ADAPTER_REGISTRY[source_id]
    except KeyError:
        raise ConfigurationError(
            f"No adapter for provider '{source_id}'; known: {sorted(ADAPTER_REGISTRY)}"
        ) from None
