"""Wire models for the orchestration service.

Every job payload is a tagged variant: the ``$type`` discriminator selects the job
kind and each variant carries its own fields. Field names are snake_case in Python
and camelCase on the wire.
"""

from datetime import datetime
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from genorch.core.timezone import to_naive_utc


class OrchestratorModel(BaseModel):
    """Base for all orchestrator wire models (camelCase aliases)."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


# Job payloads


class AdditionalNetwork(OrchestratorModel):
    """Secondary resource attached to a text-to-image job."""

    type: str
    strength: Optional[float] = None
    trigger_word: Optional[str] = None


class TextToImageParams(OrchestratorModel):
    prompt: str
    negative_prompt: str = ""
    scheduler: str
    steps: int
    cfg_scale: float
    width: int
    height: int
    seed: Optional[int] = None
    clip_skip: int = 1


class TextToImagePayload(OrchestratorModel):
    job_type: Literal["textToImage"] = Field(default="textToImage", alias="$type")
    model: str
    base_model: Optional[str] = None
    quantity: int = 1
    nsfw: bool = False
    additional_networks: dict[str, AdditionalNetwork] = Field(default_factory=dict)
    params: TextToImageParams
    properties: dict[str, Any] = Field(default_factory=dict)


class ImageResourceTrainingPayload(OrchestratorModel):
    job_type: Literal["imageResourceTraining"] = Field(
        default="imageResourceTraining", alias="$type"
    )
    model: str
    training_data: str
    callback_url: Optional[str] = None
    max_retry_attempt: int = 0
    properties: dict[str, Any] = Field(default_factory=dict)
    params: dict[str, Any] = Field(default_factory=dict)


class CopyAssetPayload(OrchestratorModel):
    job_type: Literal["copyAsset"] = Field(default="copyAsset", alias="$type")
    job_id: str
    asset_name: str
    destination_uri: str


class ClearAssetsPayload(OrchestratorModel):
    job_type: Literal["clearAssets"] = Field(default="clearAssets", alias="$type")
    job_id: str


class PrepareModelPayload(OrchestratorModel):
    job_type: Literal["prepareModel"] = Field(default="prepareModel", alias="$type")
    base_model: str
    model: str
    priority: int = 1
    providers: list[str] = Field(default_factory=list)


class BlobGetPayload(OrchestratorModel):
    job_type: Literal["blobGet"] = Field(default="blobGet", alias="$type")
    blob_key: str


class BlobDeletePayload(OrchestratorModel):
    job_type: Literal["blobDelete"] = Field(default="blobDelete", alias="$type")
    blob_key: str


JobPayload = (
    TextToImagePayload
    | ImageResourceTrainingPayload
    | CopyAssetPayload
    | ClearAssetsPayload
    | PrepareModelPayload
    | BlobGetPayload
    | BlobDeletePayload
)


# Responses


class JobHandle(OrchestratorModel):
    """One job created by a ``POST /jobs`` call."""

    job_id: str
    cost: Optional[float] = None
    status: Optional[str] = None
    queue_position: Optional[int] = None
    estimated_completed_at: Optional[datetime] = None
    result: Any = None


class JobsResponse(OrchestratorModel):
    token: Optional[str] = None
    jobs: list[JobHandle] = Field(default_factory=list)

    @property
    def first(self) -> Optional[JobHandle]:
        return self.jobs[0] if self.jobs else None


class JobEvent(OrchestratorModel):
    type: str
    date_time: datetime

    @field_validator("date_time")
    @classmethod
    def normalize_date_time(cls, v: datetime) -> datetime:
        return to_naive_utc(v)


class JobSnapshot(OrchestratorModel):
    """Point-in-time view of a job as returned by ``GET /jobs/{id}``."""

    job_id: str
    status: Optional[str] = None
    created_at: Optional[datetime] = None
    estimated_completed_at: Optional[datetime] = None
    queue_position: Optional[int] = None
    service_providers: dict[str, Any] = Field(default_factory=dict)
    payload: Optional[dict[str, Any]] = None
    result: Any = None


class CopyAssetResult(OrchestratorModel):
    found: bool = False
    file_size: Optional[int] = None
