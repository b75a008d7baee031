"""Prompt safety: moderation, heuristics and safety-net injection.

The pipeline never blocks on moderation errors (fail open). A flagged result
is returned to the caller, who rejects the request before charging for it.
"""

import re
from dataclasses import dataclass, field
from typing import Iterable, Optional, Sequence

import structlog

from genorch.models.model import ModelType
from genorch.schemas.generation import Resource
from genorch.schemas.orchestrator import AdditionalNetwork
from genorch.services.features import FeatureFlags
from genorch.services.generation.constants import (
    get_base_model_set,
    is_sdxl_family,
    resource_ref,
)
from genorch.services.moderation.client import ModerationClient, ModerationResult

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class InjectedResource:
    """Embedding added to a prompt to steer the model away from unsafe output."""

    id: int
    trigger_word: str

    @property
    def ref(self) -> str:
        return resource_ref(self.id)

    def network(self) -> AdditionalNetwork:
        return AdditionalNetwork(
            type=ModelType.TEXTUAL_INVERSION.value, trigger_word=self.trigger_word
        )


SAFE_NEGATIVES = (InjectedResource(106916, "civit_nsfw"),)
MINOR_NEGATIVES = (InjectedResource(250712, "safe_neg"),)
MINOR_POSITIVES = (InjectedResource(250708, "safe_pos"),)

ALL_INJECTED_NEGATIVES = SAFE_NEGATIVES + MINOR_NEGATIVES
ALL_INJECTED_POSITIVES = MINOR_POSITIVES
INJECTED_REFS = frozenset(r.ref for r in ALL_INJECTED_NEGATIVES + ALL_INJECTED_POSITIVES)

PROMPT_SEPARATOR = ", "

NSFW_TERMS = [
    "nsfw", "nude", "nudity", "naked", "topless", "bottomless", "nipple", "nipples",
    "areola", "pussy", "vagina", "penis", "cock", "dick", "genitals", "sex", "sexy",
    "porn", "hentai", "lingerie", "underwear", "bikini", "erotic", "fetish", "bdsm",
    "cum", "orgasm", "masturbation", "masturbating", "breasts", "boobs", "thong",
]

POI_TERMS = [
    "taylor swift", "emma watson", "scarlett johansson", "billie eilish",
    "ariana grande", "selena gomez", "kim kardashian", "margot robbie", "elon musk",
    "donald trump", "joe biden", "barack obama", "vladimir putin", "xi jinping",
    "jennifer lawrence", "natalie portman", "zendaya", "millie bobby brown",
]

MINOR_TERMS = [
    "child", "children", "kid", "kids", "minor", "underage", "teen", "teenager",
    "toddler", "infant", "baby", "loli", "lolita", "shota", "preteen", "schoolgirl",
    "schoolboy", "young girl", "young boy", "little girl", "little boy",
    "middle school",
]

# Ages under 18 written as "12yo", "12 year old", "12-years-old"
_MINOR_AGE_PATTERN = re.compile(r"\b(?:[1-9]|1[0-7])\s*(?:-|\s)?(?:yo|y/o|years?(?:\s|-)old)\b")


def _compile(terms: Iterable[str]) -> re.Pattern:
    return re.compile(r"\b(?:" + "|".join(re.escape(t) for t in terms) + r")\b", re.IGNORECASE)


_NSFW_PATTERN = _compile(NSFW_TERMS)
_POI_PATTERN = _compile(POI_TERMS)
_MINOR_PATTERN = _compile(MINOR_TERMS)


def includes_nsfw(prompt: Optional[str]) -> bool:
    return bool(prompt) and _NSFW_PATTERN.search(prompt) is not None  # type: ignore[arg-type]


def includes_poi(prompt: Optional[str]) -> bool:
    return bool(prompt) and _POI_PATTERN.search(prompt) is not None  # type: ignore[arg-type]


def includes_minor(prompt: Optional[str]) -> bool:
    if not prompt:
        return False
    return (
        _MINOR_PATTERN.search(prompt) is not None
        or _MINOR_AGE_PATTERN.search(prompt.lower()) is not None
    )


@dataclass
class SafetyResult:
    nsfw: bool
    positive_prompt: str
    negative_prompt: str
    injected_networks: dict[str, AdditionalNetwork] = field(default_factory=dict)
    moderation: ModerationResult = field(default_factory=ModerationResult)

    @property
    def flagged(self) -> bool:
        return self.moderation.flagged


class SafetyPipeline:
    """Decide the NSFW flag and the prompt augmentations for a generation."""

    def __init__(self, moderation: ModerationClient, features: FeatureFlags):
        self.moderation = moderation
        self.features = features

    async def moderate(self, prompt: str) -> ModerationResult:
        """External moderation, failing open on any error."""
        try:
            return await self.moderation.moderate_prompt(prompt)
        except Exception as e:
            logger.warning("safety.moderation.failed", error=str(e), exc_type=type(e).__name__)
            return ModerationResult()

    async def evaluate(
        self,
        prompt: str,
        negative_prompt: Optional[str],
        resources: Sequence[Resource],
        base_model: str,
        nsfw: Optional[bool] = None,
    ) -> SafetyResult:
        """Run moderation and heuristics, then inject safety-net embeddings.

        Args:
            prompt: User prompt
            negative_prompt: User negative prompt (may be empty)
            resources: Resolved resources of the request (``poi`` counts as a POI hit)
            base_model: Base model or family name
            nsfw: Explicit user flag; None means not set

        Returns:
            SafetyResult. When ``flagged`` is True the caller must reject the request.
        """
        moderation = await self.moderate(prompt)
        if moderation.flagged:
            return SafetyResult(
                nsfw=False,
                positive_prompt=prompt,
                negative_prompt=negative_prompt or "",
                moderation=moderation,
            )

        prompt_nsfw = includes_nsfw(prompt)
        has_poi = includes_poi(prompt) or any(r.poi for r in resources)
        has_minor = includes_minor(prompt)

        # An unset flag means the user allows mature content
        is_nsfw = (True if nsfw is None else nsfw) or prompt_nsfw
        if has_poi or has_minor:
            is_nsfw = False

        networks: dict[str, AdditionalNetwork] = {}
        positives = [prompt]
        negatives = [negative_prompt or ""]

        if not is_nsfw and not is_sdxl_family(get_base_model_set(base_model)):
            for injected in SAFE_NEGATIVES:
                networks[injected.ref] = injected.network()
                negatives.insert(0, injected.trigger_word)

        if prompt_nsfw and await self.features.minor_fallback_enabled():
            for injected in MINOR_POSITIVES:
                networks[injected.ref] = injected.network()
                positives.insert(0, injected.trigger_word)
            for injected in MINOR_NEGATIVES:
                networks[injected.ref] = injected.network()
                negatives.insert(0, injected.trigger_word)

        if networks:
            logger.info(
                "safety.networks.injected",
                refs=sorted(networks),
                nsfw=is_nsfw,
                poi=has_poi,
                minor=has_minor,
            )

        return SafetyResult(
            nsfw=is_nsfw,
            positive_prompt=PROMPT_SEPARATOR.join(positives),
            negative_prompt=PROMPT_SEPARATOR.join(negatives),
            injected_networks=networks,
            moderation=moderation,
        )


def strip_injected(
    prompt: str, negative_prompt: str, assets: Sequence[str]
) -> tuple[str, str, list[str]]:
    """Remove every safety-net trigger word and reference added by ``evaluate``.

    Returns:
        (prompt, negative_prompt, assets) as the user originally wrote them
    """
    for injected in ALL_INJECTED_NEGATIVES:
        negative_prompt = _strip_trigger(negative_prompt, injected.trigger_word)
    for injected in ALL_INJECTED_POSITIVES:
        prompt = _strip_trigger(prompt, injected.trigger_word)
    return prompt, negative_prompt, [a for a in assets if a not in INJECTED_REFS]


def _strip_trigger(text: str, trigger_word: str) -> str:
    prefixed = f"{trigger_word}{PROMPT_SEPARATOR}"
    if text.startswith(prefixed):
        return text[len(prefixed) :]
    if text == trigger_word:
        return ""
    return text.replace(prefixed, "", 1)
