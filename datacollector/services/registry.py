"""Named registry of externally owned services and read-only config access."""

import logging
import threading
from types import MappingProxyType
from typing import Any, Dict, List, Mapping

from datacollector.errors import ConfigurationError

logger = logging.getLogger(__name__)

_MISSING = object()


class ServiceRegistry:
    """Lookup of subsystems (scrapers, AI services, search engines) by name."""

    def __init__(self):
        self._lock = threading.Lock()
        self._services: Dict[str, Any] = {}

    def register(self, name: str, service: Any) -> None:
        """Register or replace a service."""
        with self._lock:
            self._services[name] = service
        logger.debug(f"Service registered: {name}")

    def get(self, name: str) -> Any:
        """
        Get a registered service.

        Raises:
            ConfigurationError: If no service is registered under the name
        """
        with self._lock:
            service = self._services.get(name, _MISSING)
        if service is _MISSING:
            raise ConfigurationError(f"Service '{name}' not found")
        return service

    def has(self, name: str) -> bool:
        with self._lock:
            return name in self._services

    def names(self) -> List[str]:
        with self._lock:
            return sorted(self._services)


class ConfigAccessor:
    """Read-only view over configuration values."""

    def __init__(self, values: Mapping[str, Any]):
        self._values = MappingProxyType(dict(values))

    def get(self, key: str) -> Any:
        """
        Get a required configuration value.

        Raises:
            ConfigurationError: If the key is not configured
        """
        if key not in self._values:
            raise ConfigurationError(f"Configuration key '{key}' not found")
        return self._values[key]

    def get_optional(self, key: str, default: Any = None) -> Any:
        return self._values.get(key, default)

    def as_dict(self) -> Dict[str, Any]:
        return dict(self._values)
