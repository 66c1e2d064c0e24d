"""
Provider Registry - capability -> ordered list of available providers.

Ordering is fixed, never scored at runtime, so the fallback sequence for a
capability is reproducible:
1. providers named in the configured order (pipeline.yaml capability_order,
   or RESOLUTION_PROVIDER_ORDER for isbn-resolution), in that order
2. remaining providers: paid, then free, then ai; registration order within

Availability checks run in parallel, each bounded by
AVAILABILITY_CHECK_TIMEOUT. A check that raises or times out counts as
unavailable.
"""
import logging
import os
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from typing import Any, Dict, List, Optional

from constants import (
    AVAILABILITY_CHECK_TIMEOUT,
    CAPABILITY_ISBN_RESOLUTION,
    PROVIDER_TYPE_AI,
    PROVIDER_TYPE_FREE,
    PROVIDER_TYPE_PAID,
)

logger = logging.getLogger(__name__)

_TYPE_RANK = {PROVIDER_TYPE_PAID: 0, PROVIDER_TYPE_FREE: 1, PROVIDER_TYPE_AI: 2}


def configured_order(capability: str) -> List[str]:
    """Preference order for a capability from env override or pipeline.yaml."""
    if capability == CAPABILITY_ISBN_RESOLUTION:
        override = os.getenv('RESOLUTION_PROVIDER_ORDER', '').strip()
        if override:
            return [name.strip() for name in override.split(',') if name.strip()]

    from config import load_pipeline_settings
    return list(load_pipeline_settings()['capability_order'].get(capability) or [])


class ProviderRegistry:
    """Holds provider instances and answers capability queries."""

    def __init__(
        self,
        capability_order: Optional[Dict[str, List[str]]] = None,
        availability_timeout: float = AVAILABILITY_CHECK_TIMEOUT,
    ):
        """
        Args:
            capability_order: Explicit {capability: [names]}; None reads config
            availability_timeout: Seconds allowed per is_available() check
        """
        self._providers: Dict[str, Any] = {}
        self._capability_order = capability_order
        self.availability_timeout = availability_timeout

    # =========================================================================
    # Registration
    # =========================================================================

    def register(self, provider) -> None:
        """
        Raises:
            ValueError: a provider with the same name is already registered
        """
        if provider.name in self._providers:
            raise ValueError(f"Provider already registered: {provider.name}")
        self._providers[provider.name] = provider
        logger.debug(f"Registered provider {provider.name} {provider.capabilities}")

    def register_all(self, providers) -> None:
        for provider in providers:
            self.register(provider)

    def unregister(self, name: str) -> bool:
        return self._providers.pop(name, None) is not None

    # =========================================================================
    # Lookup
    # =========================================================================

    def get(self, name: str):
        return self._providers.get(name)

    def get_all(self) -> List[Any]:
        return list(self._providers.values())

    def get_by_type(self, provider_type: str) -> List[Any]:
        return [p for p in self._providers.values() if p.provider_type == provider_type]

    def has_capability(self, capability: str) -> bool:
        return any(capability in p.capabilities for p in self._providers.values())

    def _order_for(self, capability: str) -> List[str]:
        if self._capability_order is not None:
            return list(self._capability_order.get(capability) or [])
        return configured_order(capability)

    def get_by_capability(self, capability: str) -> List[Any]:
        """All providers implementing a capability, in preference order."""
        candidates = [p for p in self._providers.values() if capability in p.capabilities]
        preferred = self._order_for(capability)
        registration = {name: i for i, name in enumerate(self._providers)}

        def sort_key(provider):
            if provider.name in preferred:
                return (0, preferred.index(provider.name), 0)
            return (1, _TYPE_RANK.get(provider.provider_type, 3), registration[provider.name])

        return sorted(candidates, key=sort_key)

    def get_available(self, capability: str) -> List[Any]:
        """
        Providers for a capability that report available right now.

        Order is that of get_by_capability(); unavailable providers are
        dropped without raising.
        """
        providers = self.get_by_capability(capability)
        if not providers:
            return []

        executor = ThreadPoolExecutor(max_workers=len(providers))
        try:
            futures = [(p, executor.submit(p.is_available)) for p in providers]
            available = []
            for provider, future in futures:
                try:
                    if future.result(timeout=self.availability_timeout):
                        available.append(provider)
                except FutureTimeout:
                    logger.warning(f"{provider.name} availability check timed out")
                except Exception as e:
                    logger.warning(f"{provider.name} availability check failed: {e}")
            return available
        finally:
            # A hung check must not hold up the caller
            executor.shutdown(wait=False)

    def get_stats(self) -> Dict[str, Any]:
        by_capability: Dict[str, List[str]] = {}
        for provider in self._providers.values():
            for capability in provider.capabilities:
                by_capability.setdefault(capability, []).append(provider.name)
        by_type: Dict[str, int] = {}
        for provider in self._providers.values():
            by_type[provider.provider_type] = by_type.get(provider.provider_type, 0) + 1
        return {
            'total_providers': len(self._providers),
            'providers': list(self._providers),
            'by_type': by_type,
            'by_capability': by_capability,
        }


# Global instance (lazy init)
_registry = None


def get_global_registry() -> ProviderRegistry:
    """Get the process-wide registry with every built-in provider registered."""
    global _registry
    if _registry is None:
        from providers.adapters import build_default_providers
        from services.kv_store import get_redis

        registry = ProviderRegistry()
        registry.register_all(build_default_providers(get_redis()))
        _registry = registry
        logger.info(f"Provider registry initialized: {registry.get_stats()['providers']}")
    return _registry
