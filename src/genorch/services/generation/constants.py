"""Static generation tables: base-model families, schedulers, sizes, pricing."""

import math
import re
from dataclasses import dataclass
from typing import Optional

from genorch.models.model import ModelType

RESOURCE_REF_PREFIX = "@resource/"
_RESOURCE_REF_PATTERN = re.compile(r"^@resource/(\d+)$")

MIN_RESOURCES = 1
MAX_RESOURCES = 10

BASE_MODEL_SETS: dict[str, tuple[str, ...]] = {
    "SD1": ("SD 1.4", "SD 1.5", "SD 1.5 LCM"),
    "SD2": ("SD 2.0", "SD 2.0 768", "SD 2.1", "SD 2.1 768", "SD 2.1 Unclip"),
    "SDXL": ("SDXL 0.9", "SDXL 1.0", "SDXL 1.0 LCM", "Pony"),
    "SDXLDistilled": ("SDXL Distilled",),
    "SCascade": ("Stable Cascade",),
}

# Family name understood by the orchestrator (None: let it infer from the checkpoint)
BASE_MODEL_TO_ORCHESTRATION: dict[str, Optional[str]] = {
    "SD1": "SD_1_5",
    "SD2": None,
    "SDXL": "SDXL",
    "SDXLDistilled": "SDXL_Distilled",
    "SCascade": "SCascade",
}

SAMPLER_TO_SCHEDULER: dict[str, str] = {
    "Euler a": "EulerA",
    "Euler": "Euler",
    "LMS": "LMS",
    "Heun": "Heun",
    "DPM2": "DPM2",
    "DPM2 a": "DPM2A",
    "DPM++ 2S a": "DPM2SA",
    "DPM++ 2M": "DPM2M",
    "DPM++ 2M SDE": "DPM2MSDE",
    "DPM++ SDE": "DPMSDE",
    "DPM fast": "DPMFast",
    "DPM adaptive": "DPMAdaptive",
    "LMS Karras": "LMSKarras",
    "DPM2 Karras": "DPM2Karras",
    "DPM2 a Karras": "DPM2AKarras",
    "DPM++ 2S a Karras": "DPM2SAKarras",
    "DPM++ 2M Karras": "DPM2MKarras",
    "DPM++ 2M SDE Karras": "DPM2MSDEKarras",
    "DPM++ SDE Karras": "DPMSDEKarras",
    "DPM++ 3M SDE": "DPM3MSDE",
    "DPM++ 3M SDE Karras": "DPM3MSDEKarras",
    "DPM++ 3M SDE Exponential": "DPM3MSDEExponential",
    "DDIM": "DDIM",
    "PLMS": "PLMS",
    "UniPC": "UniPC",
    "LCM": "LCM",
}


@dataclass(frozen=True)
class AspectRatio:
    label: str
    width: int
    height: int


@dataclass(frozen=True)
class GenerationConfig:
    additional_resource_types: tuple[ModelType, ...]
    aspect_ratios: tuple[AspectRatio, ...]
    reference_area: int
    image_cost: int


_SD1_CONFIG = GenerationConfig(
    additional_resource_types=(ModelType.LORA, ModelType.LOCON, ModelType.TEXTUAL_INVERSION),
    aspect_ratios=(
        AspectRatio("Landscape", 768, 512),
        AspectRatio("Square", 512, 512),
        AspectRatio("Portrait", 512, 768),
    ),
    reference_area=512 * 512,
    image_cost=10,
)

_SDXL_CONFIG = GenerationConfig(
    additional_resource_types=(ModelType.LORA, ModelType.LOCON, ModelType.TEXTUAL_INVERSION),
    aspect_ratios=(
        AspectRatio("Landscape", 1216, 832),
        AspectRatio("Square", 1024, 1024),
        AspectRatio("Portrait", 832, 1216),
    ),
    reference_area=1024 * 1024,
    image_cost=20,
)

GENERATION_CONFIGS: dict[str, GenerationConfig] = {
    "SD1": _SD1_CONFIG,
    "SD2": _SD1_CONFIG,
    "SDXL": _SDXL_CONFIG,
    "SDXLDistilled": GenerationConfig(
        additional_resource_types=(ModelType.LORA, ModelType.LOCON),
        aspect_ratios=_SDXL_CONFIG.aspect_ratios,
        reference_area=_SDXL_CONFIG.reference_area,
        image_cost=15,
    ),
    "SCascade": GenerationConfig(
        additional_resource_types=(),
        aspect_ratios=_SDXL_CONFIG.aspect_ratios,
        reference_area=_SDXL_CONFIG.reference_area,
        image_cost=25,
    ),
}

# Steps included in the base image price
INCLUDED_STEPS = 30


def resource_ref(model_version_id: int) -> str:
    return f"{RESOURCE_REF_PREFIX}{model_version_id}"


def parse_resource_ref(ref: str) -> Optional[int]:
    """Extract the model version id from a resource reference, None if not ours."""
    match = _RESOURCE_REF_PATTERN.match(ref)
    return int(match.group(1)) if match else None


def get_base_model_set(base_model: str) -> Optional[str]:
    """Map a concrete base model (e.g. "SDXL 1.0") or a family name to its family."""
    if base_model in BASE_MODEL_SETS:
        return base_model
    for family, members in BASE_MODEL_SETS.items():
        if base_model in members:
            return family
    return None


def is_sdxl_family(base_model_set: Optional[str]) -> bool:
    return base_model_set in ("SDXL", "SDXLDistilled")


def get_generation_config(base_model_set: Optional[str]) -> GenerationConfig:
    return GENERATION_CONFIGS.get(base_model_set or "SD1", _SD1_CONFIG)


def calculate_generation_cost(
    base_model_set: Optional[str],
    quantity: int,
    steps: int,
    width: int,
    height: int,
    multiplier: float = 1.0,
) -> int:
    """Price of a text-to-image job, computed before anything is submitted.

    Per-image price scales with the pixel area relative to the family's native
    square size and with steps beyond INCLUDED_STEPS.

    Example:
        >>> calculate_generation_cost("SD1", quantity=4, steps=20, width=512, height=512)
        40
    """
    config = get_generation_config(base_model_set)
    size_factor = (width * height) / config.reference_area
    step_factor = max(1.0, steps / INCLUDED_STEPS)
    return math.ceil(config.image_cost * quantity * size_factor * step_factor * multiplier)
