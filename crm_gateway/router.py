"""Dispatch Router: capability name -> owning adapter."""

import logging
from typing import Any, Dict, Optional, Tuple

from .backends.base import BackendAdapter
from .errors import UnknownCapability
from .models import InvocationResult
from .registry import CapabilityRegistry

logger = logging.getLogger(__name__)


class DispatchRouter:
    """
    Routes invocations using a name table built once from the registry.

    A name carrying an adapter prefix (``sheets_``, ``calendly_``, ``email_``)
    is routed to that adapter with the prefix stripped; any other name is an
    exact lookup.
    """

    def __init__(self, registry: CapabilityRegistry):
        self.registry = registry
        self._table: Dict[str, BackendAdapter] = {
            name: registry.owner(name) for name in registry.names()
        }
        self._prefixes: Dict[str, BackendAdapter] = {
            f"{adapter.name}_": adapter for adapter in registry.adapters
        }

    def resolve(self, name: str) -> Tuple[BackendAdapter, str]:
        """Owning adapter and the adapter-local capability name."""
        if name in self._table:
            return self._table[name], name
        for prefix, adapter in self._prefixes.items():
            if name.startswith(prefix):
                local = name[len(prefix):]
                if adapter.handles(local):
                    return adapter, local
        raise UnknownCapability(name)

    def route(self, name: str) -> BackendAdapter:
        return self.resolve(name)[0]

    async def dispatch(self, name: str, arguments: Optional[Dict[str, Any]] = None) -> InvocationResult:
        """Invoke a capability. Unknown names come back as an error result."""
        try:
            adapter, local = self.resolve(name)
        except UnknownCapability as e:
            logger.warning(f"Unknown tool requested: {name}")
            return InvocationResult.failure(e.code, e.message)
        logger.info(f"Calling {adapter.name}.{local}")
        return await adapter.invoke(local, arguments)
