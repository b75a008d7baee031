"""Training parameter bounds, base model mapping and pricing."""

import math
from dataclasses import dataclass, field
from typing import Any, Optional

# Training base model type -> orchestrator model reference
TRAINING_BASE_MODELS: dict[str, str] = {
    "sdxl": "civitai:101055@128078",
    "sd_1_5": "SD_1_5",
    "anime": "anime",
    "realistic": "civitai:81458@132760",
    "semi": "civitai:4384@128713",
}


@dataclass(frozen=True)
class Bounds:
    min: Optional[float] = None
    max: Optional[float] = None


@dataclass(frozen=True)
class TrainingSetting:
    name: str
    bounds: Bounds
    overrides: dict[str, Bounds] = field(default_factory=dict)

    def bounds_for(self, base_model: Optional[str]) -> Bounds:
        """Bounds for a base model; override fields replace the defaults one by one."""
        override = self.overrides.get(base_model or "")
        if override is None:
            return self.bounds
        return Bounds(
            min=self.bounds.min if override.min is None else override.min,
            max=self.bounds.max if override.max is None else override.max,
        )


TRAINING_SETTINGS: dict[str, TrainingSetting] = {
    s.name: s
    for s in (
        TrainingSetting("maxTrainEpochs", Bounds(3, 16), {"sdxl": Bounds(min=1)}),
        TrainingSetting("numRepeats", Bounds(1, 1000)),
        TrainingSetting(
            "trainBatchSize",
            Bounds(4, 9),
            {"realistic": Bounds(2, 2), "sdxl": Bounds(2, 4)},
        ),
        TrainingSetting("targetSteps", Bounds(min=1)),
        TrainingSetting("resolution", Bounds(512, 1024), {"sdxl": Bounds(min=1024)}),
        TrainingSetting("noiseOffset", Bounds(0, 1)),
        TrainingSetting("clipSkip", Bounds(1, 4)),
        TrainingSetting("unetLR", Bounds(0, 1)),
        TrainingSetting("textEncoderLR", Bounds(0, 1)),
        TrainingSetting("lrSchedulerNumCycles", Bounds(1, 4)),
        TrainingSetting("minSnrGamma", Bounds(0, 20)),
        TrainingSetting("networkDim", Bounds(1, 128), {"sdxl": Bounds(max=256)}),
        TrainingSetting("networkAlpha", Bounds(1, 128), {"sdxl": Bounds(max=256)}),
    )
}


def find_invalid_params(params: dict[str, Any], base_model: Optional[str]) -> list[str]:
    """Names of numeric params outside their allowed range. Unknown keys are ignored."""
    invalid = []
    for key, value in params.items():
        setting = TRAINING_SETTINGS.get(key)
        if setting is None or isinstance(value, bool) or not isinstance(value, (int, float)):
            continue
        bounds = setting.bounds_for(base_model)
        if (bounds.min is not None and value < bounds.min) or (
            bounds.max is not None and value > bounds.max
        ):
            invalid.append(key)
    return invalid


# Minutes per step, scaled by network size: (base minutes, per step, per dim, per alpha)
_ETA_COEFFICIENTS: dict[str, tuple[float, float, float, float]] = {
    "sdxl": (5.0, 0.012, 0.00004, 0.00002),
    "default": (2.0, 0.004, 0.00002, 0.00001),
}

MIN_TRAINING_PRICE = 500
PRICE_PER_MINUTE = 20


def calc_eta(
    network_dim: Optional[float],
    network_alpha: Optional[float],
    target_steps: Optional[float],
    base_model: Optional[str],
) -> Optional[float]:
    """Estimated training time in minutes, None when inputs are missing."""
    if not base_model or base_model not in TRAINING_BASE_MODELS:
        return None
    if not network_dim or not network_alpha or not target_steps:
        return None

    base, per_step, per_dim, per_alpha = _ETA_COEFFICIENTS.get(
        base_model, _ETA_COEFFICIENTS["default"]
    )
    return base + target_steps * (per_step + network_dim * per_dim + network_alpha * per_alpha)


def calc_price_from_eta(eta_minutes: float) -> int:
    return max(MIN_TRAINING_PRICE, math.ceil(eta_minutes * PRICE_PER_MINUTE))
