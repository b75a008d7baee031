"""Orchestrator client for submitting and tracking remote compute jobs."""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Optional, TypeVar

import httpx
import structlog
from pydantic import ValidationError

from genorch.core.config import Settings
from genorch.core.timezone import to_naive_utc
from genorch.schemas.orchestrator import (
    BlobDeletePayload,
    BlobGetPayload,
    ClearAssetsPayload,
    CopyAssetPayload,
    CopyAssetResult,
    ImageResourceTrainingPayload,
    JobEvent,
    JobPayload,
    JobSnapshot,
    JobsResponse,
    PrepareModelPayload,
    TextToImagePayload,
)
from genorch.services.exceptions import (
    NotFoundError,
    RemoteRateLimitedError,
    RemoteSubmissionFailedError,
    RemoteTransientError,
)

logger = structlog.get_logger(__name__)

T = TypeVar("T")

JOBS_PATH = "/v1/consumer/jobs"


@dataclass(frozen=True)
class OrchestratorEndpoint:
    """Base URL and credential of one orchestrator deployment."""

    name: str
    base_url: str
    access_token: str

    @property
    def headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.access_token}",
            "Content-Type": "application/json",
        }


def choose_endpoint(submitted_at: Optional[datetime], settings: Settings) -> OrchestratorEndpoint:
    """Pick the deployment that owns a job submitted at ``submitted_at``.

    The alternate deployment is used when it is configured (endpoint and token),
    a window is configured (start, end or both) and ``start < submitted_at < end``.
    Missing bounds are open. Jobs without a submission time (new submissions)
    always go to the primary deployment.

    Evaluated on every call: the same job may be polled while the window is
    being moved, so the result must never be cached.
    """
    primary = OrchestratorEndpoint(
        name="primary",
        base_url=settings.orchestrator_endpoint.rstrip("/"),
        access_token=settings.orchestrator_access_token,
    )
    if submitted_at is None:
        return primary
    if not (settings.alt_orchestrator_endpoint and settings.alt_orchestrator_access_token):
        return primary

    start = settings.alt_orchestrator_window_start
    end = settings.alt_orchestrator_window_end
    if start is None and end is None:
        return primary

    when = to_naive_utc(submitted_at)
    if (start is None or when > to_naive_utc(start)) and (end is None or when < to_naive_utc(end)):
        return OrchestratorEndpoint(
            name="alternate",
            base_url=settings.alt_orchestrator_endpoint.rstrip("/"),
            access_token=settings.alt_orchestrator_access_token,
        )
    return primary


class OrchestratorClient:
    """Typed client for the remote job orchestration service.

    One method per job kind. Every call resolves its endpoint from the job's
    submission time and runs with an explicit timeout.

    Error classification:
        429 -> RemoteRateLimitedError
        5xx, timeouts, transport errors -> RemoteTransientError
        404 on reads -> NotFoundError
        other non-2xx -> RemoteSubmissionFailedError (carries the response body)
        malformed 2xx body -> RemoteSubmissionFailedError
    """

    def __init__(
        self,
        settings: Settings,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize orchestrator client.

        Args:
            settings: Application settings (endpoints, tokens, timeout, routing window)
            transport: Optional httpx transport (tests inject httpx.MockTransport)
        """
        self.settings = settings
        self.timeout = settings.orchestrator_timeout_seconds
        self.transport = transport

    # Job submission

    async def text_to_image(self, payload: TextToImagePayload) -> JobsResponse:
        return await self._submit(payload)

    async def image_resource_training(
        self, payload: ImageResourceTrainingPayload, submitted_at: Optional[datetime] = None
    ) -> JobsResponse:
        return await self._submit(payload, submitted_at=submitted_at)

    async def copy_asset(
        self,
        job_id: str,
        asset_name: str,
        destination_uri: str,
        submitted_at: Optional[datetime] = None,
        wait: bool = True,
    ) -> CopyAssetResult:
        """Copy one output asset of a job to ``destination_uri``.

        Returns:
            CopyAssetResult with ``found`` False when the job or asset is gone
        """
        payload = CopyAssetPayload(
            job_id=job_id, asset_name=asset_name, destination_uri=destination_uri
        )
        response = await self._submit(payload, submitted_at=submitted_at, wait=wait)
        job = response.first
        if job is None or not isinstance(job.result, dict):
            return CopyAssetResult(found=False)
        return CopyAssetResult.model_validate(job.result)

    async def clear_assets(
        self, job_id: str, submitted_at: Optional[datetime] = None, wait: bool = True
    ) -> JobsResponse:
        return await self._submit(
            ClearAssetsPayload(job_id=job_id), submitted_at=submitted_at, wait=wait
        )

    async def prepare_model(self, payload: PrepareModelPayload) -> JobsResponse:
        return await self._submit(payload)

    async def get_blob(self, blob_key: str) -> JobsResponse:
        return await self._submit(BlobGetPayload(blob_key=blob_key))

    async def delete_blob(self, blob_key: str) -> JobsResponse:
        return await self._submit(BlobDeletePayload(blob_key=blob_key))

    # Job inspection

    async def get_job_events(
        self,
        job_id: str,
        submitted_at: Optional[datetime] = None,
        take: int = 1,
        descending: bool = True,
    ) -> list[JobEvent]:
        """Fetch the event history of a job (most recent first by default).

        Raises:
            NotFoundError: Job unknown to the orchestrator
            RemoteTransientError: Timeout, transport error or 5xx
        """
        response = await self._request(
            "GET",
            f"/v1/producer/jobs/{job_id}/events",
            submitted_at=submitted_at,
            params={"take": take, "descending": str(descending).lower()},
            read=True,
        )
        if not response.content:
            return []
        return self._parse(response, _parse_events)

    async def get_job(self, job_id: str, submitted_at: Optional[datetime] = None) -> JobSnapshot:
        response = await self._request(
            "GET", f"{JOBS_PATH}/{job_id}", submitted_at=submitted_at, read=True
        )
        return self._parse(response, JobSnapshot.model_validate)

    async def delete_job(self, job_id: str, submitted_at: Optional[datetime] = None) -> None:
        """Cancel a job and drop its outputs.

        Raises:
            NotFoundError: Job unknown to the orchestrator
        """
        await self._request("DELETE", f"{JOBS_PATH}/{job_id}", submitted_at=submitted_at, read=True)
        logger.info("orchestrator.job.deleted", job_id=job_id)

    async def taint_job(
        self,
        job_id: str,
        reason: str,
        context: Optional[dict[str, Any]] = None,
        submitted_at: Optional[datetime] = None,
    ) -> None:
        """Flag a job's output as bad (user feedback)."""
        await self._request(
            "PUT",
            f"{JOBS_PATH}/{job_id}",
            submitted_at=submitted_at,
            json={"reason": reason, "context": context or {}},
            read=True,
        )

    # Transport

    async def _submit(
        self,
        payload: JobPayload,
        submitted_at: Optional[datetime] = None,
        wait: bool = False,
    ) -> JobsResponse:
        params = {"wait": "true"} if wait else None
        response = await self._request(
            "POST", JOBS_PATH, submitted_at=submitted_at, json=payload.to_wire(), params=params
        )
        result = self._parse(response, JobsResponse.model_validate)
        logger.debug(
            "orchestrator.job.submitted",
            job_type=payload.job_type,
            job_ids=[job.job_id for job in result.jobs],
        )
        return result

    @staticmethod
    def _parse(response: httpx.Response, parse: Callable[[Any], T]) -> T:
        """Decode a 2xx body; a malformed one counts as a failed request."""
        try:
            return parse(response.json())
        except (ValueError, ValidationError) as e:
            logger.warning(
                "orchestrator.response.malformed",
                url=str(response.request.url),
                status_code=response.status_code,
                error=str(e),
            )
            raise RemoteSubmissionFailedError(
                "Orchestrator returned a malformed response",
                status_code=response.status_code,
                body=response.text,
            )

    async def _request(
        self,
        method: str,
        path: str,
        submitted_at: Optional[datetime] = None,
        json: Optional[dict[str, Any]] = None,
        params: Optional[dict[str, Any]] = None,
        read: bool = False,
    ) -> httpx.Response:
        endpoint = choose_endpoint(submitted_at, self.settings)
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.request(
                    method,
                    f"{endpoint.base_url}{path}",
                    headers=endpoint.headers,
                    json=json,
                    params=params,
                )
        except httpx.TimeoutException as e:
            raise RemoteTransientError(
                f"Orchestrator request timeout after {self.timeout}s: {str(e)}"
            )
        except httpx.HTTPError as e:
            raise RemoteTransientError(f"Orchestrator network error: {str(e)}")

        # Error classification
        if response.status_code == 429:
            raise RemoteRateLimitedError(f"Orchestrator rate limit exceeded: {response.text}")
        elif response.status_code >= 500:
            raise RemoteTransientError(
                f"Orchestrator unavailable ({response.status_code}): {response.text}"
            )
        elif response.status_code == 404 and read:
            raise NotFoundError(f"Orchestrator job not found: {path}")
        elif response.status_code >= 400:
            logger.warning(
                "orchestrator.request.rejected",
                method=method,
                path=path,
                endpoint=endpoint.name,
                status_code=response.status_code,
            )
            raise RemoteSubmissionFailedError(
                f"Orchestrator rejected request ({response.status_code})",
                status_code=response.status_code,
                body=response.text,
            )

        return response


def _parse_events(data: Any) -> list[JobEvent]:
    if data is None:
        return []
    if not isinstance(data, list):
        raise ValueError(f"expected a list of events, got {type(data).__name__}")
    # Events without a type or timestamp carry no usable state
    return [
        JobEvent.model_validate(event)
        for event in data
        if isinstance(event, dict) and event.get("type") and event.get("dateTime")
    ]
