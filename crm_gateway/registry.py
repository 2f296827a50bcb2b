"""Capability Registry: the fixed, ordered catalog of tools exposed to clients."""

import logging
from typing import Any, Dict, Iterable, List, Optional

from .backends.base import BackendAdapter
from .models import CapabilityDescriptor

logger = logging.getLogger(__name__)


class CapabilityRegistry:
    """
    Built once at startup from the configured adapters.

    Order is adapter registration order, then declaration order within each
    adapter. Names must be unique across adapters.
    """

    def __init__(self, adapters: Iterable[BackendAdapter]):
        self._adapters: List[BackendAdapter] = list(adapters)
        self._descriptors: List[CapabilityDescriptor] = []
        self._owners: Dict[str, BackendAdapter] = {}

        for adapter in self._adapters:
            for descriptor in adapter.capabilities():
                if descriptor.name in self._owners:
                    owner = self._owners[descriptor.name].name
                    raise ValueError(
                        f"Capability '{descriptor.name}' declared by both '{owner}' and '{adapter.name}'"
                    )
                self._owners[descriptor.name] = adapter
                self._descriptors.append(descriptor)

        logger.info(
            f"Registered {len(self._descriptors)} tools from "
            f"{len(self._adapters)} backend(s): {', '.join(a.name for a in self._adapters) or 'none'}"
        )

    @property
    def adapters(self) -> List[BackendAdapter]:
        return list(self._adapters)

    def list(self) -> List[CapabilityDescriptor]:
        return list(self._descriptors)

    def names(self) -> List[str]:
        return [d.name for d in self._descriptors]

    def owner(self, name: str) -> Optional[BackendAdapter]:
        return self._owners.get(name)

    def adapter(self, adapter_name: str) -> Optional[BackendAdapter]:
        for adapter in self._adapters:
            if adapter.name == adapter_name:
                return adapter
        return None

    def to_wire(self) -> List[Dict[str, Any]]:
        return [d.to_wire() for d in self._descriptors]

    def __len__(self) -> int:
        return len(self._descriptors)

    def __contains__(self, name: object) -> bool:
        return name in self._owners
