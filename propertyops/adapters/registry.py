from propertyops.adapters.visma import HttpVismaAdapter, StubVismaAdapter
from propertyops.errors import ValidationError
from propertyops.logging_config import get_logger

logger = get_logger(__name__)


class AdapterRegistry:
    """Maps a target system name (e.g. 'VISMA') to its export adapter."""

    def __init__(self):
        self._adapters = {}

    def register(self, adapter, target_system=None):
        name = (target_system or adapter.target_system).upper()
        self._adapters[name] = adapter
        return adapter

    def get(self, target_system):
        """
        Raises:
            ValidationError: If no adapter is configured for the target system
        """
        adapter = self._adapters.get((target_system or "").upper())
        if adapter is None:
            raise ValidationError(
                f"Unsupported target system: {target_system}",
                details={"supported": sorted(self._adapters)},
            )
        return adapter

    def names(self):
        return sorted(self._adapters)


def build_adapter_registry(config):
    """Wire the adapters for the configured environment."""
    registry = AdapterRegistry()

    mode = config.get("VISMA_ADAPTER_MODE", "stub")
    if mode == "http":
        registry.register(HttpVismaAdapter(
            config.get("VISMA_API_BASE_URL"),
            config.get("VISMA_API_TOKEN"),
            timeout=config.get("OUTBOX_HANDLER_TIMEOUT_SECONDS", 30),
        ))
    elif mode == "stub":
        registry.register(StubVismaAdapter(delay_seconds=config.get("VISMA_STUB_DELAY_SECONDS", 0.1)))
    else:
        raise ValueError(f"Unknown VISMA_ADAPTER_MODE: {mode}")

    logger.info("Export adapters configured", targets=registry.names(), visma_mode=mode)
    return registry
