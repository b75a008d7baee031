"""Tests for GenerationService.

The orchestrator and the ledger are faked at the HTTP layer; resolution,
safety, quota and feature flags run for real on SQLite and the in-memory Redis.
"""

import json
from datetime import timedelta
from typing import Union

import httpx
import pytest
from conftest import LEDGER_URL, ORCHESTRATOR_URL, grant_access, seed_resource
from sqlalchemy import select
from tenacity import wait_none

from genorch.core.timezone import utcnow
from genorch.models import Availability, GenerationJob, ModelType
from genorch.schemas.generation import (
    CreateGenerationRequestInput,
    GenerationRequestStatus,
    SessionUser,
)
from genorch.schemas.orchestrator import JobSnapshot
from genorch.services.exceptions import (
    AccessDeniedError,
    GenerationDisabledError,
    InsufficientFundsError,
    InvalidInputError,
    InvalidResourceSetError,
    NotFoundError,
    RateLimitedError,
    RemoteRateLimitedError,
    RemoteSubmissionFailedError,
)
from genorch.services.features import FEATURES_KEY, GENERATION_STATUS_FIELD, FeatureFlags
from genorch.services.generation.limiter import QuotaLimiter
from genorch.services.generation.resources import ResourceResolver
from genorch.services.generation.safety import SAFE_NEGATIVES, SafetyPipeline
from genorch.services.generation.service import GenerationService, map_request_status
from genorch.services.ledger.client import LedgerClient
from genorch.services.moderation.client import ModerationClient
from genorch.services.orchestrator.client import OrchestratorClient

USER = SessionUser(id=7, tier="free")
MODERATOR = SessionUser(id=1, tier="free", is_moderator=True)


class Remote:
    """One MockTransport serving both the orchestrator and the ledger.

    ``jobs`` answers reads and deletes of single jobs (an int is an error
    status); everything else gets ``orchestrator_body`` (a str is sent as-is).
    """

    def __init__(self):
        self.orchestrator_status = 200
        self.orchestrator_body: Union[dict, str] = {"jobs": [{"jobId": "job-1", "status": "Pending"}]}
        self.jobs: dict[str, Union[dict, int]] = {}
        self.ledger_debit_status = 200
        self.orchestrator_requests: list[httpx.Request] = []
        self.deleted_jobs: list[str] = []
        self.debits: list[dict] = []
        self.refunds: list[tuple[str, dict]] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        url = str(request.url)
        if url.startswith(LEDGER_URL):
            body = json.loads(request.content)
            if request.url.path.endswith("/refund"):
                self.refunds.append((request.url.path.split("/")[3], body))
                return httpx.Response(200, json={})
            self.debits.append(body)
            if self.ledger_debit_status != 200:
                return httpx.Response(self.ledger_debit_status, text="insufficient funds")
            return httpx.Response(200, json={"transactionId": f"tx-{len(self.debits)}"})

        assert url.startswith(ORCHESTRATOR_URL)
        self.orchestrator_requests.append(request)
        if self.orchestrator_status != 200:
            return httpx.Response(self.orchestrator_status, text="orchestrator error")

        parts = request.url.path.split("/")
        job_id = parts[4] if len(parts) == 5 else None
        if job_id in self.jobs:
            job = self.jobs[job_id]
            if isinstance(job, int):
                return httpx.Response(job, text="gone")
            if request.method == "DELETE":
                self.deleted_jobs.append(job_id)
                return httpx.Response(204)
            return httpx.Response(200, json=job)

        if isinstance(self.orchestrator_body, str):
            return httpx.Response(200, text=self.orchestrator_body)
        return httpx.Response(200, json=self.orchestrator_body)

    @property
    def submitted_payload(self) -> dict:
        return json.loads(self.orchestrator_requests[-1].content)

    @property
    def submitted_payloads(self) -> list[dict]:
        return [json.loads(r.content) for r in self.orchestrator_requests if r.method == "POST"]


@pytest.fixture
def remote() -> Remote:
    return Remote()


@pytest.fixture
def service(remote, uow_factory, redis, settings) -> GenerationService:
    transport = httpx.MockTransport(remote)
    features = FeatureFlags(redis, settings)
    return GenerationService(
        orchestrator=OrchestratorClient(settings, transport=transport),
        ledger=LedgerClient(settings, transport=transport, retry_wait=wait_none()),
        resolver=ResourceResolver(uow_factory, redis, features, settings),
        safety=SafetyPipeline(ModerationClient(settings), features),
        limiter=QuotaLimiter(redis, uow_factory, features, settings),
        features=features,
        uow_factory=uow_factory,
        settings=settings,
    )


def make_request(resources=None, **params) -> CreateGenerationRequestInput:
    return CreateGenerationRequestInput.model_validate(
        {
            "resources": resources
            if resources is not None
            else [{"id": 1, "modelType": "Checkpoint"}],
            "params": {
                "prompt": "a lighthouse at dusk",
                "quantity": 4,
                "steps": 20,
                "aspectRatio": "1",
                "baseModel": "SD1",
                "sampler": "Euler a",
                **params,
            },
        }
    )


async def get_pointers(session) -> list[GenerationJob]:
    session.expire_all()
    result = await session.execute(select(GenerationJob))
    return list(result.scalars().all())


@pytest.mark.asyncio
async def test_submission_failure_refunds_the_debit(session, service, remote):
    """One debit of 40, a submission error, then exactly one refund of the same transaction."""
    await seed_resource(session, 1)
    remote.orchestrator_status = 500

    with pytest.raises(RemoteSubmissionFailedError):
        await service.submit(USER, make_request())

    assert len(remote.debits) == 1
    assert remote.debits[0]["amount"] == 40
    assert remote.debits[0]["fromAccountId"] == USER.id

    payload = remote.submitted_payload
    assert payload["$type"] == "textToImage"
    assert payload["model"] == "@resource/1"
    assert payload["quantity"] == 4
    assert payload["params"]["width"] == 512
    assert payload["params"]["height"] == 512
    assert payload["additionalNetworks"] == {}
    assert payload["properties"]["transactionId"] == "tx-1"

    assert len(remote.refunds) == 1
    assert remote.refunds[0][0] == "tx-1"
    assert await get_pointers(session) == []


@pytest.mark.asyncio
async def test_successful_submission(session, service, remote, redis):
    await seed_resource(session, 1)
    await seed_resource(session, 2, model_type=ModelType.LORA)

    result = await service.submit(
        USER,
        make_request(
            resources=[
                {"id": 1, "modelType": "Checkpoint"},
                {"id": 2, "modelType": "LORA", "strength": 0.6},
            ],
            negativePrompt="blurry",
        ),
    )

    assert result.id == "job-1"
    assert result.status == GenerationRequestStatus.PENDING
    assert result.user_id == USER.id
    assert result.params.prompt == "a lighthouse at dusk"
    assert result.params.negative_prompt == "blurry"
    assert result.params.base_model == "SD1"
    assert [r.id for r in result.resources] == [1, 2]
    assert result.resources[1].strength == 0.6

    assert remote.submitted_payload["additionalNetworks"] == {
        "@resource/2": {"type": "LORA", "strength": 0.6}
    }
    assert remote.refunds == []

    pointers = await get_pointers(session)
    assert len(pointers) == 1
    assert pointers[0].job_id == "job-1"
    assert pointers[0].cost == 40
    assert pointers[0].transaction_id == "tx-1"
    assert await service.limiter.get_count(str(USER.id)) == 4


@pytest.mark.asyncio
async def test_safe_request_gets_safety_net_but_user_view_does_not(session, service, remote):
    await seed_resource(session, 1)

    result = await service.submit(USER, make_request(nsfw=False, negativePrompt="blurry"))

    injected = SAFE_NEGATIVES[0]
    payload = remote.submitted_payload
    assert payload["nsfw"] is False
    assert injected.ref in payload["additionalNetworks"]
    assert payload["params"]["negativePrompt"] == f"{injected.trigger_word}, blurry"

    assert result.params.negative_prompt == "blurry"
    assert [r.id for r in result.resources] == [1]


@pytest.mark.asyncio
async def test_remote_rate_limit_refunds_and_propagates(session, service, remote):
    await seed_resource(session, 1)
    remote.orchestrator_status = 429

    with pytest.raises(RemoteRateLimitedError):
        await service.submit(USER, make_request())

    assert len(remote.refunds) == 1


@pytest.mark.asyncio
async def test_empty_job_list_refunds(session, service, remote):
    await seed_resource(session, 1)
    remote.orchestrator_body = {"jobs": []}

    with pytest.raises(RemoteSubmissionFailedError):
        await service.submit(USER, make_request())

    assert len(remote.refunds) == 1


@pytest.mark.asyncio
async def test_malformed_submission_response_refunds(session, service, remote):
    """A 200 that is not a job list still refunds and surfaces as a failed submission."""
    await seed_resource(session, 1)
    remote.orchestrator_body = "<html>gateway</html>"

    with pytest.raises(RemoteSubmissionFailedError):
        await service.submit(USER, make_request())

    assert [transaction_id for transaction_id, _ in remote.refunds] == ["tx-1"]
    assert await get_pointers(session) == []


@pytest.mark.asyncio
async def test_unexpected_submission_error_refunds(session, service, remote, monkeypatch):
    await seed_resource(session, 1)

    async def broken(payload):
        raise RuntimeError("connection pool exhausted")

    monkeypatch.setattr(service.orchestrator, "text_to_image", broken)

    with pytest.raises(RemoteSubmissionFailedError) as exc_info:
        await service.submit(USER, make_request())

    assert isinstance(exc_info.value.__cause__, RuntimeError)
    assert len(remote.refunds) == 1


@pytest.mark.asyncio
async def test_insufficient_funds_submits_nothing(session, service, remote):
    await seed_resource(session, 1)
    remote.ledger_debit_status = 402

    with pytest.raises(InsufficientFundsError):
        await service.submit(USER, make_request())

    assert remote.orchestrator_requests == []
    assert remote.refunds == []


# Policy checks happen before any charge


@pytest.mark.asyncio
async def test_generation_disabled(session, service, remote, redis):
    await seed_resource(session, 1)
    await redis.hset(
        FEATURES_KEY, GENERATION_STATUS_FIELD, json.dumps({"available": False, "message": "Down"})
    )

    with pytest.raises(GenerationDisabledError, match="Down"):
        await service.submit(USER, make_request())
    assert remote.debits == []

    # Moderators bypass the switch
    await service.submit(MODERATOR, make_request())
    assert len(remote.debits) == 1


@pytest.mark.asyncio
async def test_rate_limited(session, service, remote):
    await seed_resource(session, 1)
    await service.limiter.increment(str(USER.id), 300)

    with pytest.raises(RateLimitedError) as exc_info:
        await service.submit(USER, make_request())

    assert exc_info.value.retry_at is not None
    assert remote.debits == []


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "resources",
    [
        [],
        [{"id": i, "modelType": "LORA"} for i in range(11)],
        [{"id": 404, "modelType": "Checkpoint"}],
    ],
)
async def test_invalid_resource_sets(session, service, remote, resources):
    await seed_resource(session, 1)

    with pytest.raises(InvalidResourceSetError):
        await service.submit(USER, make_request(resources=resources))
    assert remote.debits == []


@pytest.mark.asyncio
async def test_uncovered_resource(session, service, remote):
    await seed_resource(session, 1, covered=False)

    with pytest.raises(InvalidResourceSetError, match="not available"):
        await service.submit(USER, make_request())
    assert remote.debits == []


@pytest.mark.asyncio
async def test_toggled_off_resource(session, service, remote):
    await seed_resource(session, 1)
    await service.toggle_unavailable_resource(1, MODERATOR)

    with pytest.raises(InvalidResourceSetError):
        await service.submit(USER, make_request())
    assert remote.debits == []


@pytest.mark.asyncio
async def test_checkpoint_required(session, service, remote):
    await seed_resource(session, 2, model_type=ModelType.LORA)

    with pytest.raises(InvalidResourceSetError, match="checkpoint is required"):
        await service.submit(USER, make_request(resources=[{"id": 2, "modelType": "LORA"}]))
    assert remote.debits == []


@pytest.mark.asyncio
async def test_single_checkpoint_only(session, service, remote):
    await seed_resource(session, 1)
    await seed_resource(session, 2)

    with pytest.raises(InvalidResourceSetError, match="Only one checkpoint"):
        await service.submit(
            USER,
            make_request(
                resources=[{"id": 1, "modelType": "Checkpoint"}, {"id": 2, "modelType": "Checkpoint"}]
            ),
        )
    assert remote.debits == []


@pytest.mark.asyncio
async def test_private_resource_without_grant(session, service, remote):
    await seed_resource(session, 1, availability=Availability.PRIVATE)

    with pytest.raises(AccessDeniedError):
        await service.submit(USER, make_request())
    assert remote.debits == []

    await grant_access(session, 1, USER.id)
    await service.submit(USER, make_request())
    assert len(remote.debits) == 1


@pytest.mark.asyncio
@pytest.mark.parametrize("aspect_ratio", ["512x512", "7", "wide"])
async def test_invalid_aspect_ratio(session, service, remote, aspect_ratio):
    await seed_resource(session, 1)

    with pytest.raises(InvalidInputError):
        await service.submit(USER, make_request(aspectRatio=aspect_ratio))
    assert remote.debits == []


# Reading requests back


@pytest.mark.asyncio
async def test_format_request_strips_injections(session, service):
    await seed_resource(session, 1)
    await seed_resource(session, 2, model_type=ModelType.LORA)
    injected = SAFE_NEGATIVES[0]
    snapshot = JobSnapshot.model_validate(
        {
            "jobId": "job-9",
            "status": "Claimed",
            "payload": {
                "model": "@resource/1",
                "quantity": 2,
                "additionalNetworks": {
                    "@resource/2": {"type": "LORA", "strength": 0.5, "triggerWord": "foo"},
                    injected.ref: {"type": "TextualInversion"},
                },
                "params": {
                    "prompt": "a cat",
                    "negativePrompt": f"{injected.trigger_word}, ugly",
                    "seed": -1,
                    "cfgScale": 7,
                },
                "properties": {"userId": 7},
            },
            "result": [{"blobKey": "abc", "available": True}, {"other": 1}],
        }
    )

    request = await service.format_request(snapshot)

    assert request.status == GenerationRequestStatus.PROCESSING
    assert request.params.prompt == "a cat"
    assert request.params.negative_prompt == "ugly"
    assert request.params.seed is None
    assert request.params.quantity == 2
    assert [r.id for r in request.resources] == [1, 2]
    assert request.resources[1].trigger_word == "foo"
    assert [image.blob_key for image in request.images] == ["abc"]


@pytest.mark.parametrize(
    ("label", "expected"),
    [
        ("Scheduled", GenerationRequestStatus.PENDING),
        ("Processing", GenerationRequestStatus.PROCESSING),
        ("Succeeded", GenerationRequestStatus.SUCCEEDED),
        ("Canceled", GenerationRequestStatus.CANCELLED),
        ("Expired", GenerationRequestStatus.ERROR),
        ("Mystery", GenerationRequestStatus.PENDING),
        (None, GenerationRequestStatus.PENDING),
    ],
)
def test_map_request_status(label, expected):
    assert map_request_status(label) == expected


@pytest.mark.asyncio
async def test_get_request_checks_ownership(service, remote):
    remote.orchestrator_body = {"jobId": "job-1", "payload": {"properties": {"userId": 99}}}

    with pytest.raises(AccessDeniedError):
        await service.get_request("job-1", USER)

    request = await service.get_request("job-1", MODERATOR)
    assert request.user_id == 99


def job_body(job_id: str, user_id: int = USER.id, blob_keys: tuple[str, ...] = ()) -> dict:
    return {
        "jobId": job_id,
        "status": "Succeeded",
        "payload": {"params": {"prompt": f"prompt {job_id}"}, "properties": {"userId": user_id}},
        "result": [{"blobKey": key, "available": True} for key in blob_keys],
    }


async def seed_pointers(session, user_id: int, job_ids: list[str]) -> None:
    """Pointers for ``job_ids``, the first one newest."""
    now = utcnow()
    session.add_all(
        GenerationJob(job_id=job_id, user_id=user_id, created_at=now - timedelta(minutes=i))
        for i, job_id in enumerate(job_ids)
    )
    await session.commit()


@pytest.mark.asyncio
async def test_list_requests_pages_through_own_jobs(session, service, remote):
    await seed_pointers(session, USER.id, ["job-3", "job-2", "job-1"])
    await seed_pointers(session, 99, ["job-other"])
    for job_id in ("job-1", "job-2", "job-3"):
        remote.jobs[job_id] = job_body(job_id)

    first = await service.list_requests(USER, limit=2)

    assert [item.id for item in first.items] == ["job-3", "job-2"]
    assert first.items[0].params.prompt == "prompt job-3"
    assert first.items[0].status == GenerationRequestStatus.SUCCEEDED
    assert first.next_cursor == "job-2"

    rest = await service.list_requests(USER, cursor=first.next_cursor, limit=2)

    assert [item.id for item in rest.items] == ["job-1"]
    assert rest.next_cursor is None


@pytest.mark.asyncio
async def test_list_requests_skips_expired_jobs(session, service, remote):
    await seed_pointers(session, USER.id, ["job-2", "job-1"])
    remote.jobs["job-1"] = job_body("job-1")
    remote.jobs["job-2"] = 404

    page = await service.list_requests(USER)

    assert [item.id for item in page.items] == ["job-1"]
    assert page.next_cursor is None


@pytest.mark.asyncio
@pytest.mark.parametrize("cursor", ["unknown", "job-other"])
async def test_list_requests_rejects_foreign_cursor(session, service, cursor):
    await seed_pointers(session, 99, ["job-other"])

    with pytest.raises(InvalidInputError):
        await service.list_requests(USER, cursor=cursor)


@pytest.mark.asyncio
async def test_delete_request_checks_ownership(session, service, remote):
    await seed_pointers(session, 99, ["job-1"])
    remote.jobs["job-1"] = job_body("job-1", user_id=99)

    with pytest.raises(AccessDeniedError):
        await service.delete_request("job-1", USER)
    assert remote.deleted_jobs == []

    await service.delete_request("job-1", MODERATOR)

    assert remote.deleted_jobs == ["job-1"]
    assert await get_pointers(session) == []


@pytest.mark.asyncio
async def test_delete_unknown_request(service, remote):
    remote.jobs["job-1"] = 404

    with pytest.raises(NotFoundError):
        await service.delete_request("job-1", USER)


@pytest.mark.asyncio
async def test_delete_all_requests(session, service, remote):
    await seed_pointers(session, USER.id, ["job-2", "job-1"])
    await seed_pointers(session, 99, ["job-other"])
    remote.jobs["job-2"] = job_body("job-2")
    # Already expired on the orchestrator: the pointer still goes
    remote.jobs["job-1"] = 404

    deleted = await service.delete_all_requests(USER)

    assert deleted == 2
    assert remote.deleted_jobs == ["job-2"]
    assert [pointer.job_id for pointer in await get_pointers(session)] == ["job-other"]


@pytest.mark.asyncio
async def test_delete_images(service, remote):
    remote.jobs["job-1"] = job_body("job-1", blob_keys=("a", "b"))

    await service.delete_images("job-1", ["a", "b"], USER)

    assert remote.submitted_payloads == [
        {"$type": "blobDelete", "blobKey": "a"},
        {"$type": "blobDelete", "blobKey": "b"},
    ]


@pytest.mark.asyncio
async def test_delete_images_outside_the_request(service, remote):
    remote.jobs["job-1"] = job_body("job-1", blob_keys=("a",))
    remote.jobs["job-2"] = job_body("job-2", user_id=99, blob_keys=("b",))

    with pytest.raises(NotFoundError, match="Images not found: c"):
        await service.delete_images("job-1", ["a", "c"], USER)
    with pytest.raises(AccessDeniedError):
        await service.delete_images("job-2", ["b"], USER)

    assert remote.submitted_payloads == []


# Operator actions


@pytest.mark.asyncio
async def test_toggle_unavailable_resource(service):
    assert await service.toggle_unavailable_resource(5, MODERATOR) == [5]
    assert await service.check_resource_coverage(5) is False
    assert await service.toggle_unavailable_resource(5, MODERATOR) == []


@pytest.mark.asyncio
async def test_toggle_requires_moderator(service):
    with pytest.raises(AccessDeniedError):
        await service.toggle_unavailable_resource(5, USER)


@pytest.mark.asyncio
async def test_prepare_model_payload(service, remote):
    await service.prepare_model(3, "SDXL 1.0")

    assert remote.submitted_payload == {
        "$type": "prepareModel",
        "baseModel": "SDXL",
        "model": "@resource/3",
        "priority": 1,
        "providers": ["OctoML", "OctoMLNext"],
    }
