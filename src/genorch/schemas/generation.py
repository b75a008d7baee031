"""Generation domain models (API input and the reconstructed request view)."""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from genorch.models.model import ModelType
from genorch.models.model_version import Availability
from genorch.services.generation.constants import SAMPLER_TO_SCHEDULER


class CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, protected_namespaces=()
    )


class Resource(CamelModel):
    """Cached, read-only description of a model version usable for generation."""

    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, protected_namespaces=(), frozen=True
    )

    id: int
    model_id: int
    name: str
    model_name: str
    model_type: ModelType
    base_model: str
    trained_words: list[str] = Field(default_factory=list)
    covered: bool = False
    availability: Availability = Availability.PUBLIC
    poi: bool = False
    strength: float = 1
    min_strength: float = -1
    max_strength: float = 2


class GenerationResourceInput(CamelModel):
    id: int
    model_type: ModelType
    strength: Optional[float] = None
    trigger_word: Optional[str] = None


class GenerationParamsInput(CamelModel):
    prompt: str = Field(min_length=1, max_length=1500)
    negative_prompt: Optional[str] = Field(default=None, max_length=1000)
    cfg_scale: float = Field(default=7, ge=1, le=30)
    sampler: str = "DPM++ 2M Karras"
    seed: Optional[int] = Field(default=None, ge=-1)
    steps: int = Field(default=25, ge=1, le=150)
    clip_skip: int = Field(default=2, ge=1, le=10)
    quantity: int = Field(default=4, ge=1, le=10)
    aspect_ratio: str = "1"
    base_model: str = "SD1"
    nsfw: Optional[bool] = None

    @field_validator("sampler")
    @classmethod
    def validate_sampler(cls, v: str) -> str:
        if v not in SAMPLER_TO_SCHEDULER:
            raise ValueError(f"Unknown sampler: {v}")
        return v


class CreateGenerationRequestInput(CamelModel):
    resources: list[GenerationResourceInput] = Field(default_factory=list)
    params: GenerationParamsInput


class GenerationRequestStatus(str, Enum):
    PENDING = "Pending"
    PROCESSING = "Processing"
    CANCELLED = "Cancelled"
    ERROR = "Error"
    SUCCEEDED = "Succeeded"


class GenerationRequestParams(CamelModel):
    prompt: str
    negative_prompt: str = ""
    scheduler: Optional[str] = None
    steps: Optional[int] = None
    cfg_scale: Optional[float] = None
    width: Optional[int] = None
    height: Optional[int] = None
    seed: Optional[int] = None
    clip_skip: Optional[int] = None
    base_model: Optional[str] = None
    quantity: int = 1


class RequestResource(CamelModel):
    id: int
    name: str
    trained_words: list[str] = Field(default_factory=list)
    model_id: int
    model_name: str
    model_type: ModelType
    base_model: str
    strength: Optional[float] = None
    trigger_word: Optional[str] = None


class GeneratedImage(CamelModel):
    blob_key: str
    available: bool = False
    url: Optional[str] = None


class GenerationRequest(CamelModel):
    id: str
    user_id: Optional[int] = None
    created_at: Optional[datetime] = None
    estimated_completion_date: Optional[datetime] = None
    status: GenerationRequestStatus
    queue_position: Optional[int] = None
    alternatives_available: bool = False
    params: GenerationRequestParams
    resources: list[RequestResource] = Field(default_factory=list)
    images: list[GeneratedImage] = Field(default_factory=list)


class GenerationRequestPage(CamelModel):
    items: list[GenerationRequest] = Field(default_factory=list)
    next_cursor: Optional[str] = None


class GenerationStatus(CamelModel):
    available: bool = True
    message: Optional[str] = None


class SessionUser(CamelModel):
    """Caller identity resolved by the API layer (authentication is external)."""

    id: int
    tier: str = "free"
    is_moderator: bool = False


class SendFeedbackInput(CamelModel):
    reason: str = Field(min_length=1, max_length=100)
    message: Optional[str] = Field(default=None, max_length=1000)


class PrepareModelInput(CamelModel):
    id: int
    base_model: str
