"""External prompt moderation client."""

from typing import Optional

import httpx
import structlog
from pydantic import BaseModel, Field

from genorch.core.config import Settings
from genorch.services.exceptions import PermanentError, TransientError

logger = structlog.get_logger(__name__)


class ModerationResult(BaseModel):
    flagged: bool = False
    categories: list[str] = Field(default_factory=list)


class ModerationClient:
    """Client for the external text moderation endpoint.

    Raises on failure; the safety pipeline decides to fail open.
    """

    def __init__(self, settings: Settings, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.endpoint = settings.moderation_endpoint
        self.timeout = settings.moderation_timeout_seconds
        self.transport = transport
        self.headers = {"Content-Type": "application/json"}
        if settings.moderation_token:
            self.headers["Authorization"] = f"Bearer {settings.moderation_token}"

    @property
    def enabled(self) -> bool:
        return bool(self.endpoint)

    async def moderate_prompt(self, prompt: str) -> ModerationResult:
        """Classify a prompt.

        Returns:
            ModerationResult (not flagged when moderation is not configured)

        Raises:
            TransientError: Timeout, transport error, 429 or 5xx
            PermanentError: Any other rejection
        """
        if not self.enabled:
            return ModerationResult()

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.post(
                    self.endpoint, headers=self.headers, json={"input": prompt}
                )
        except httpx.TimeoutException as e:
            raise TransientError(f"Moderation timeout after {self.timeout}s: {str(e)}")
        except httpx.HTTPError as e:
            raise TransientError(f"Moderation network error: {str(e)}")

        if response.status_code == 429 or response.status_code >= 500:
            raise TransientError(
                f"Moderation unavailable ({response.status_code}): {response.text}"
            )
        elif response.status_code >= 400:
            raise PermanentError(f"Moderation rejected request ({response.status_code})")

        data = response.json()
        # OpenAI-style {"results": [{flagged, categories: {name: bool}}]} or a flat result
        result = (data.get("results") or [data])[0]
        categories = result.get("categories") or []
        if isinstance(categories, dict):
            categories = [name for name, hit in categories.items() if hit]
        return ModerationResult(flagged=bool(result.get("flagged")), categories=categories)
