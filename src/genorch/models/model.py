"""Model entity - a published resource family (checkpoint, LoRA, embedding...)."""

from enum import Enum

from sqlmodel import Field, SQLModel


class ModelType(str, Enum):
    """Kind of artifact a model publishes."""

    CHECKPOINT = "Checkpoint"
    TEXTUAL_INVERSION = "TextualInversion"
    MOTION_MODULE = "MotionModule"
    HYPERNETWORK = "Hypernetwork"
    AESTHETIC_GRADIENT = "AestheticGradient"
    LORA = "LORA"
    LOCON = "LoCon"
    CONTROLNET = "Controlnet"
    UPSCALER = "Upscaler"
    VAE = "VAE"
    POSES = "Poses"
    WILDCARDS = "Wildcards"


class ModelUploadType(str, Enum):
    """How the model's files came to exist."""

    CREATED = "Created"
    TRAINED = "Trained"


class Model(SQLModel, table=True):
    """Model groups the versions a creator publishes under one name."""

    __tablename__ = "models"  # type: ignore[assignment]

    id: int = Field(primary_key=True)
    name: str = Field(max_length=255)
    type: ModelType = Field(index=True)
    user_id: int = Field(index=True)
    poi: bool = Field(default=False)  # depicts a real person of interest
    upload_type: ModelUploadType = Field(default=ModelUploadType.CREATED)
