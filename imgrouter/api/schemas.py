"""Pydantic models for API request/response schemas."""

from __future__ import annotations

from enum import Enum
from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


# ── Enums ──────────────────────────────────────────────────────────────

class Provider(str, Enum):
    VOLCENGINE = "VolcEngine"
    GITEE = "Gitee"
    MODELSCOPE = "ModelScope"
    HUGGINGFACE = "HuggingFace"
    UNKNOWN = "Unknown"


class TaskStatus(str, Enum):
    PENDING = "PENDING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    TIMED_OUT = "TIMED_OUT"


# ── Gateway request ────────────────────────────────────────────────────

class ChatMessage(BaseModel):
    model_config = ConfigDict(extra="allow")

    role: str
    content: Union[str, list[Any], None] = None


class ChatCompletionRequest(BaseModel):
    """OpenAI-style chat completion body. Unknown fields are accepted and ignored."""
    model_config = ConfigDict(extra="allow", protected_namespaces=())

    model: Optional[str] = None
    messages: list[ChatMessage] = Field(default_factory=list)
    # Only a literal true selects SSE; CanonicalRequest.from_chat decides
    stream: Optional[Any] = None
    size: Optional[str] = None


# ── Stored settings ────────────────────────────────────────────────────

class ModelSizeConfig(BaseModel):
    textToImage: str = ""
    imageEdit: str = ""


class GatewaySettings(BaseModel):
    """Runtime settings persisted together with the key pool."""
    access_token: str = ""
    active_provider: str = "auto"
    # Per-call upstream timeout in seconds
    api_timeout: float = 120.0
    model_sizes: dict[str, ModelSizeConfig] = Field(default_factory=dict)


# ── Admin request models ───────────────────────────────────────────────

class KeyCreateBody(BaseModel):
    name: str = Field(..., min_length=1)
    value: str = Field(..., min_length=1, description="Provider credential")
    provider: Optional[Provider] = Field(default=None, description="留空则按格式自动识别")
    rotation_weight: int = Field(default=1, ge=1)


class KeyWeightBody(BaseModel):
    # Validated by the pool manager so the 422 comes from one place
    rotation_weight: int


class SettingsUpdateBody(BaseModel):
    access_token: Optional[str] = None
    active_provider: Optional[str] = None
    api_timeout: Optional[float] = None


class LoginRequest(BaseModel):
    token: str = ""


class ImportRequest(BaseModel):
    content: str


# ── Response models ────────────────────────────────────────────────────

class KeyInfoResponse(BaseModel):
    id: str
    name: str
    value: str  # masked
    provider: Provider
    rotation_weight: int
    usage_count: int
    suspended: bool
    suspended_until: Optional[float] = None
    created_at: float


class StatsResponse(BaseModel):
    total_keys: int
    active_keys: int
    banned_keys: int
    total_usage: int
    by_provider: dict[str, int]


class ProviderInfoResponse(BaseModel):
    name: str
    default_model: str
    default_size: str
    async_generation: bool
