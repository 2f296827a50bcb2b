"""Wire models shared by both transports."""

import json
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

JSONRPC_VERSION = "2.0"

RecordStatus = Literal["open", "in-progress", "resolved", "closed"]
RecordPriority = Literal["low", "medium", "high", "urgent"]


class CapabilityDescriptor(BaseModel):
    """A named, schema-described operation exposed by a backend."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    name: str
    description: str
    input_schema: Dict[str, Any] = Field(alias="inputSchema")

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)


class TextContent(BaseModel):
    type: Literal["text"] = "text"
    text: str


class RpcError(BaseModel):
    code: int
    message: str


class InvocationResult(BaseModel):
    """Outcome of a capability invocation: text content or an error, never both."""

    content: List[TextContent] = Field(default_factory=list)
    error: Optional[RpcError] = None

    @model_validator(mode="after")
    def _content_or_error(self) -> "InvocationResult":
        if self.error is not None and self.content:
            raise ValueError("an invocation result carries content or an error, not both")
        return self

    @classmethod
    def of_text(cls, text: str) -> "InvocationResult":
        return cls(content=[TextContent(text=text)])

    @classmethod
    def of_data(cls, data: Any) -> "InvocationResult":
        """Render structured data as a single JSON text block."""
        return cls.of_text(json.dumps(data, indent=2, default=str))

    @classmethod
    def failure(cls, code: int, message: str) -> "InvocationResult":
        return cls(error=RpcError(code=code, message=message))

    @property
    def is_error(self) -> bool:
        return self.error is not None

    @property
    def text(self) -> str:
        return "\n".join(block.text for block in self.content)

    def to_wire(self) -> Dict[str, Any]:
        return {"content": [block.model_dump() for block in self.content]}


class InvocationRequest(BaseModel):
    """One JSON-RPC message received from a client."""

    jsonrpc: str = JSONRPC_VERSION
    method: str
    id: Optional[Union[int, str]] = None
    params: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("params", mode="before")
    @classmethod
    def _null_params(cls, value: Any) -> Any:
        return {} if value is None else value

    @property
    def is_notification(self) -> bool:
        return "id" not in self.model_fields_set


class CustomerRecord(BaseModel):
    """A customer support record as stored in the spreadsheet."""

    model_config = ConfigDict(populate_by_name=True)

    id: str
    name: str = ""
    email: str = ""
    phone: str = ""
    issue: str = ""
    status: str = ""
    priority: str = ""
    created_at: str = Field(default="", alias="createdAt")
    updated_at: str = Field(default="", alias="updatedAt")
    notes: str = ""

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)


def rpc_result(request_id: Any, result: Dict[str, Any]) -> Dict[str, Any]:
    return {"jsonrpc": JSONRPC_VERSION, "id": request_id, "result": result}


def rpc_error(request_id: Any, code: int, message: str) -> Dict[str, Any]:
    return {"jsonrpc": JSONRPC_VERSION, "id": request_id, "error": {"code": code, "message": message}}
