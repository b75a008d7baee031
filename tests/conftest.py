"""pytest fixtures for genorch tests.

Provides:
- utc_timezone: Autouse fixture enforcing UTC timezone
- settings: Test settings with every remote endpoint configured
- redis: In-memory stand-in for the async Redis client
- session: Function-scoped session on a fresh in-memory SQLite database
- uow_factory: Function-scoped UnitOfWork factory bound to the same database
- seed helpers for resources and training runs
"""

import math
import os
import time
from datetime import datetime
from typing import Any, AsyncGenerator, Optional

# Settings are read when genorch.app is imported
os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("TRAINING_MONITOR_ENABLED", "false")

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from redis.exceptions import ConnectionError as RedisConnectionError  # noqa: E402
from sqlalchemy.ext.asyncio import (  # noqa: E402
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool  # noqa: E402
from sqlmodel import SQLModel  # noqa: E402

import genorch.models  # noqa: E402, F401
from genorch.core.config import Settings  # noqa: E402
from genorch.core.timezone import isoformat, utcnow  # noqa: E402
from genorch.models import (  # noqa: E402
    Availability,
    EntityAccess,
    GenerationCoverage,
    Model,
    ModelFile,
    ModelType,
    ModelUploadType,
    ModelVersion,
    TRAINING_DATA_FILE_TYPE,
    TrainingStatus,
)
from genorch.uow import create_uow_factory  # noqa: E402

ORCHESTRATOR_URL = "http://orchestrator.test"
ALT_ORCHESTRATOR_URL = "http://orchestrator-alt.test"
LEDGER_URL = "http://ledger.test"
MODERATION_URL = "http://moderation.test/v1/moderations"


class FakePipeline:
    """Buffered commands of a non-transactional pipeline."""

    def __init__(self, redis: "FakeRedis"):
        self.redis = redis
        self.commands: list[tuple[str, tuple, dict]] = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        self.commands.clear()
        return False

    def set(self, *args, **kwargs):
        self.commands.append(("set", args, kwargs))
        return self

    async def execute(self) -> list[Any]:
        results = []
        for name, args, kwargs in self.commands:
            results.append(await getattr(self.redis, name)(*args, **kwargs))
        self.commands.clear()
        return results


class FakeRedis:
    """In-memory subset of redis.asyncio.Redis (decode_responses=True).

    Set ``fail = True`` to make every command raise a connection error.
    """

    def __init__(self):
        self.data: dict[str, Any] = {}
        self.expiry: dict[str, float] = {}
        self.fail = False

    def _check(self) -> None:
        if self.fail:
            raise RedisConnectionError("Connection refused")

    def _purge(self, key: str) -> None:
        deadline = self.expiry.get(key)
        if deadline is not None and deadline <= time.monotonic():
            self.data.pop(key, None)
            self.expiry.pop(key, None)

    async def get(self, key: str) -> Optional[str]:
        self._check()
        self._purge(key)
        return self.data.get(key)

    async def set(self, key: str, value: Any, nx: bool = False, ex: Optional[int] = None):
        self._check()
        self._purge(key)
        if nx and key in self.data:
            return None
        self.data[key] = str(value)
        if ex:
            self.expiry[key] = time.monotonic() + ex
        else:
            self.expiry.pop(key, None)
        return True

    async def mget(self, keys: list[str]) -> list[Optional[str]]:
        self._check()
        return [await self.get(key) for key in keys]

    async def delete(self, *keys: str) -> int:
        self._check()
        deleted = 0
        for key in keys:
            if self.data.pop(key, None) is not None:
                deleted += 1
            self.expiry.pop(key, None)
        return deleted

    async def incrby(self, key: str, amount: int = 1) -> int:
        self._check()
        self._purge(key)
        value = int(self.data.get(key, 0)) + amount
        self.data[key] = str(value)
        return value

    async def ttl(self, key: str) -> int:
        self._check()
        self._purge(key)
        if key not in self.data:
            return -2
        if key not in self.expiry:
            return -1
        return math.ceil(self.expiry[key] - time.monotonic())

    async def expire(self, key: str, seconds: int) -> bool:
        self._check()
        if key not in self.data:
            return False
        self.expiry[key] = time.monotonic() + seconds
        return True

    async def hget(self, key: str, field: str) -> Optional[str]:
        self._check()
        return self.data.get(key, {}).get(field)

    async def hset(self, key: str, field: str, value: Any) -> int:
        self._check()
        bucket = self.data.setdefault(key, {})
        created = field not in bucket
        bucket[field] = str(value)
        return int(created)

    def pipeline(self, transaction: bool = True) -> FakePipeline:
        self._check()
        return FakePipeline(self)

    async def aclose(self) -> None:
        pass


@pytest.fixture(scope="session", autouse=True)
def utc_timezone():
    """Enforce UTC timezone for all tests."""
    os.environ["TZ"] = "UTC"
    yield


@pytest.fixture
def settings() -> Settings:
    """Settings with every remote configured and no alternate routing window."""
    return Settings(  # type: ignore[call-arg]
        APP_ENV="test",
        DATABASE_URL="sqlite+aiosqlite:///:memory:",
        ORCHESTRATOR_ENDPOINT=ORCHESTRATOR_URL,
        ORCHESTRATOR_ACCESS_TOKEN="primary-token",
        LEDGER_ENDPOINT=LEDGER_URL,
        LEDGER_ACCESS_TOKEN="ledger-token",
        LEDGER_CENTRAL_ACCOUNT_ID=0,
        LEDGER_REFUND_ATTEMPTS=3,
        MODERATION_ENDPOINT="",
        GENERATION_LIMITS={"free": 300, "member": 1000},
        MAX_TRAINING_RETRIES=2,
        GENERATION_CALLBACK_HOST="http://callback.test",
        WEBHOOK_TOKEN="hook-token",
        TRAINING_MONITOR_CONCURRENCY=1,
        TRAINING_MONITOR_ENABLED=False,
    )


@pytest.fixture
def redis() -> FakeRedis:
    return FakeRedis()


@pytest_asyncio.fixture(scope="function")
async def engine():
    """Fresh in-memory SQLite database with every table created."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def session(engine) -> AsyncGenerator[AsyncSession, None]:
    """Provide a session for arranging and asserting database state."""
    session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest_asyncio.fixture(scope="function")
async def uow_factory(engine):
    """Provide a UnitOfWork factory bound to the test database."""
    session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    return create_uow_factory(session_factory)


async def seed_resource(
    session: AsyncSession,
    model_version_id: int,
    model_type: ModelType = ModelType.CHECKPOINT,
    base_model: str = "SD 1.5",
    covered: Optional[bool] = True,
    availability: Availability = Availability.PUBLIC,
    poi: bool = False,
    user_id: int = 100,
) -> ModelVersion:
    """Insert a model (id = version id + 1000) and one version with its coverage row."""
    session.add(
        Model(
            id=model_version_id + 1000,
            name=f"Model {model_version_id}",
            type=model_type,
            user_id=user_id,
            poi=poi,
        )
    )
    version = ModelVersion(
        id=model_version_id,
        model_id=model_version_id + 1000,
        name=f"v{model_version_id}",
        base_model=base_model,
        trained_words=[f"word{model_version_id}"],
        availability=availability,
        settings={"strength": 0.8},
    )
    session.add(version)
    if covered is not None:
        session.add(GenerationCoverage(model_version_id=model_version_id, covered=covered))
    await session.commit()
    return version


async def grant_access(session: AsyncSession, model_version_id: int, user_id: int) -> None:
    session.add(
        EntityAccess(entity_id=model_version_id, entity_type="ModelVersion", accessor_id=user_id)
    )
    await session.commit()


def training_results(
    job_id: Optional[str] = "job-1",
    transaction_id: Optional[str] = "tx-1",
    submitted_at: Optional[datetime] = None,
    submissions: int = 1,
    epochs: Optional[list] = None,
) -> dict:
    """Build ``trainingResults`` metadata with ``submissions`` history entries."""
    submitted_at = submitted_at or utcnow()
    results: dict[str, Any] = {
        "jobId": job_id,
        "transactionId": transaction_id,
        "submittedAt": isoformat(submitted_at),
        "history": [
            {"time": isoformat(submitted_at), "status": "Submitted", "jobId": job_id}
            for _ in range(submissions)
        ],
    }
    if epochs is not None:
        results["epochs"] = epochs
    return results


TRAINING_PARAMS = {
    "maxTrainEpochs": 10,
    "numRepeats": 10,
    "trainBatchSize": 4,
    "targetSteps": 1000,
    "resolution": 512,
    "networkDim": 32,
    "networkAlpha": 16,
    "unetLR": 0.0005,
}


async def seed_training_run(
    session: AsyncSession,
    model_version_id: int,
    status: Optional[TrainingStatus] = TrainingStatus.PENDING,
    results: Optional[dict] = None,
    updated_at: Optional[datetime] = None,
    base_model: str = "sd_1_5",
    params: Optional[dict] = None,
    user_id: int = 100,
) -> ModelVersion:
    """Insert a trained model, its version and the training data file."""
    session.add(
        Model(
            id=model_version_id + 1000,
            name=f"Lora {model_version_id}",
            type=ModelType.LORA,
            user_id=user_id,
            upload_type=ModelUploadType.TRAINED,
        )
    )
    version = ModelVersion(
        id=model_version_id,
        model_id=model_version_id + 1000,
        name=f"v{model_version_id}",
        base_model="SD 1.5",
        training_status=status,
        training_details={
            "baseModel": base_model,
            "params": TRAINING_PARAMS if params is None else params,
        },
        updated_at=updated_at or utcnow(),
    )
    session.add(version)
    session.add(
        ModelFile(
            id=model_version_id + 5000,
            model_version_id=model_version_id,
            type=TRAINING_DATA_FILE_TYPE,
            url=f"https://storage.test/training/{model_version_id}.zip",
            file_metadata={"trainingResults": results} if results is not None else None,
        )
    )
    await session.commit()
    return version
