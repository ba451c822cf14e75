"""Pydantic schemas for agent entities, wire frames and control API payloads."""

from __future__ import annotations

from enum import Enum
from typing import Literal, Union

from pydantic import BaseModel, ConfigDict, Field


class CamelModel(BaseModel):
    """Base model serialised with the broker's camelCase field names."""

    model_config = ConfigDict(populate_by_name=True)


# --- Entities ---


class PluginIdentity(CamelModel):
    """Durable identity issued by the broker."""

    plugin_id: str = Field(..., alias="pluginId", min_length=1)
    connection_token: str = Field(..., alias="connectionToken", min_length=1)


class Capability(CamelModel):
    """Local resources this agent can offer."""

    gpu_descriptor: str | None = Field(default=None, alias="gpuDescriptor")
    gpu_memory: str | None = Field(default=None, alias="gpuMemory")
    local_endpoint: str | None = Field(default=None, alias="localEndpoint")


class WorkItem(BaseModel):
    """One inference job received from the broker."""

    request_id: str | int
    prompt: str
    model_name: str


class WorkResult(BaseModel):
    """Outcome of processing a WorkItem."""

    model_config = ConfigDict(frozen=True)

    response_text: str | None = None
    token_count: int | None = None
    cost: float | None = None
    model: str | None = None
    provider: str | None = None
    error_message: str | None = None

    @property
    def ok(self) -> bool:
        return self.error_message is None


# --- Wire frames ---


class FrameType(str, Enum):
    """Discriminator values for frames on the broker socket."""

    CONNECT = "connect"
    CONNECTED = "connected"
    INFERENCE_REQUEST = "inference_request"
    INFERENCE_RESPONSE = "inference_response"
    HEARTBEAT = "heartbeat"


class ConnectFrame(CamelModel):
    type: Literal["connect"] = "connect"
    plugin_id: str = Field(..., alias="pluginId")
    connection_token: str = Field(..., alias="connectionToken")


class ConnectedFrame(CamelModel):
    type: Literal["connected"] = "connected"


class HeartbeatFrame(CamelModel):
    type: Literal["heartbeat"] = "heartbeat"


class InferenceRequestFrame(CamelModel):
    type: Literal["inference_request"] = "inference_request"
    request_id: str | int = Field(..., alias="requestId")
    prompt: str
    model: str

    def to_work_item(self) -> WorkItem:
        return WorkItem(request_id=self.request_id, prompt=self.prompt, model_name=self.model)


class InferenceResult(BaseModel):
    """Priced result payload of a successful inference_response."""

    response: str
    model: str
    tokens: int = Field(..., ge=0)
    cost: float = Field(..., ge=0.0)


class InferenceResponseFrame(CamelModel):
    type: Literal["inference_response"] = "inference_response"
    request_id: str | int = Field(..., alias="requestId")
    result: InferenceResult | None = None
    error: str | None = None

    @classmethod
    def from_result(cls, request_id: str | int, result: WorkResult) -> InferenceResponseFrame:
        """Build the response frame for a dispatched work item."""
        if not result.ok:
            return cls(request_id=request_id, error=result.error_message)
        return cls(
            request_id=request_id,
            result=InferenceResult(
                response=result.response_text or "",
                model=result.model or "",
                tokens=result.token_count or 0,
                cost=result.cost or 0.0,
            ),
        )


InboundFrame = Union[ConnectedFrame, HeartbeatFrame, InferenceRequestFrame]


# --- Control API ---


class AgentStatus(CamelModel):
    """Snapshot returned by the status query surface."""

    is_connected: bool = Field(..., alias="isConnected")
    state: str
    plugin_id: str | None = Field(default=None, alias="pluginId")
    capability: Capability


class ConnectResult(BaseModel):
    """Outcome of a connect or disconnect request."""

    success: bool
    message: str | None = None
    error: str | None = None


class SettingsUpdate(CamelModel):
    """Partial settings update. Omitted fields keep their current value."""

    gpu_descriptor: str | None = Field(default=None, alias="gpuDescriptor")
    local_endpoint: str | None = Field(default=None, alias="localEndpoint")
    pricing: float | None = Field(default=None, ge=0.0)
    redetect: bool = False


class SettingsResult(CamelModel):
    success: bool
    capability: Capability
    pricing: float


class EarningsResponse(BaseModel):
    earnings: float = 0.0
    error: str | None = None


class HealthResponse(CamelModel):
    """Health check response."""

    agent: Literal["healthy", "unhealthy"] = "healthy"
    state: str
    local_endpoint: str | None = Field(default=None, alias="localEndpoint")


class ErrorResponse(BaseModel):
    """Error response for failed requests."""

    detail: str
    error_code: str | None = None
