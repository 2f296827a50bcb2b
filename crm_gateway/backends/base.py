"""
Backend adapter contract
========================
Each adapter declares its capabilities with the ``capability`` decorator,
one pydantic model per capability describing the arguments. The model's
JSON schema is what clients see as the tool's ``inputSchema``; the same
model validates the arguments when the tool is invoked.
"""

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple, Type

from pydantic import BaseModel, ConfigDict
from pydantic import ValidationError as ArgumentsError

from ..errors import GatewayError, InternalError, UnknownCapability, ValidationError
from ..models import CapabilityDescriptor, InvocationResult

logger = logging.getLogger(__name__)


class ToolInput(BaseModel):
    """Base for capability argument models."""

    model_config = ConfigDict(str_strip_whitespace=True, populate_by_name=True)


class NoArguments(ToolInput):
    pass


@dataclass(frozen=True)
class CapabilitySpec:
    name: str
    description: str
    params: Type[ToolInput]

    def descriptor(self) -> CapabilityDescriptor:
        schema = self.params.model_json_schema(by_alias=True)
        schema.pop("title", None)
        schema.setdefault("properties", {})
        return CapabilityDescriptor(name=self.name, description=self.description, input_schema=schema)


def capability(name: str, description: str, params: Type[ToolInput] = NoArguments) -> Callable:
    """Mark an adapter coroutine method as an invocable capability."""

    def decorator(func: Callable) -> Callable:
        func.__capability__ = CapabilitySpec(name, description, params)
        return func

    return decorator


def _field_path(error: Dict[str, Any]) -> str:
    return ".".join(str(part) for part in error.get("loc", ())) or "arguments"


def validate_arguments(params: Type[ToolInput], arguments: Optional[Dict[str, Any]]) -> ToolInput:
    if arguments is None:
        arguments = {}
    if not isinstance(arguments, dict):
        raise ValidationError("Tool arguments must be an object")
    try:
        return params.model_validate(arguments)
    except ArgumentsError as exc:
        errors = exc.errors()
        missing = [_field_path(e) for e in errors if e.get("type") == "missing"]
        if missing:
            raise ValidationError(f"Missing required argument(s): {', '.join(missing)}") from None
        first = errors[0]
        raise ValidationError(f"Invalid argument '{_field_path(first)}': {first.get('msg')}") from None


class BackendAdapter:
    """
    Base class for backend adapters.

    Subclasses set ``name`` (also the routing prefix) and decorate their
    handlers with ``capability``. Declaration order is preserved.
    """

    name: str = ""
    title: str = ""
    description: str = ""

    _capabilities: Dict[str, Tuple[CapabilitySpec, str]] = {}

    def __init_subclass__(cls, **kwargs):
        super().__init_subclass__(**kwargs)
        capabilities = dict(cls._capabilities)
        for attr, value in cls.__dict__.items():
            spec = getattr(value, "__capability__", None)
            if spec is not None:
                capabilities[spec.name] = (spec, attr)
        cls._capabilities = capabilities

    def capability_names(self) -> List[str]:
        return list(self._capabilities)

    def capabilities(self) -> List[CapabilityDescriptor]:
        return [spec.descriptor() for spec, _ in self._capabilities.values()]

    def handles(self, name: str) -> bool:
        return name in self._capabilities

    async def invoke(self, name: str, arguments: Optional[Dict[str, Any]] = None) -> InvocationResult:
        """Run one capability. Failures come back as an error result, never raised."""
        try:
            entry = self._capabilities.get(name)
            if entry is None:
                raise UnknownCapability(name)
            spec, attr = entry
            params = validate_arguments(spec.params, arguments)
            return await getattr(self, attr)(params)
        except GatewayError as e:
            logger.warning(f"[{self.name}] {name} failed: {e}")
            return InvocationResult.failure(e.code, e.message)
        except Exception as e:
            logger.exception(f"[{self.name}] {name} raised an unexpected error")
            error = InternalError(f"Error calling tool: {e}")
            return InvocationResult.failure(error.code, error.message)

    async def aclose(self) -> None:
        """Release any client resources held by the adapter."""
