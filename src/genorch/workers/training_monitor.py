"""Training lifecycle monitor.

Periodically sweeps training jobs that are still ``Submitted`` or ``Processing``
locally and have not been updated since the previous sweep, and reconciles them
with the orchestrator:

- no remote job id: resubmit
- latest event Succeeded with epochs: InReview
- Succeeded without epochs, Failed, Deleted, Expired: Failed + refund
- Rejected for longer than the rejected threshold: Failed + refund
- Submitted and silent past the submitted threshold: resubmit unless the job is
  queued with a service provider
- Processing and silent past the processing threshold: Failed + refund

Each job is evaluated in two steps. The decision only reads (database, events,
queue); the state write and the refund happen afterwards, in that order, so an
abandoned evaluation never leaves a half-applied transition. Once started, the
write and refund are shielded from cancellation: a sweep timeout waits for them.

A failure on one job is logged and the sweep moves on. The only retries are the
bounded refund retries of the ledger client; a stuck job is resubmitted at most
once per sweep and at most ``MAX_TRAINING_RETRIES`` times overall.
"""

import asyncio
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Awaitable, Optional, TypeVar

import structlog
from redis.asyncio import Redis

from genorch.core.config import Settings
from genorch.core.timezone import isoformat, parse_datetime, utcnow
from genorch.models.model_version import TrainingStatus
from genorch.schemas.training import TrainingRun
from genorch.services.exceptions import NotFoundError, ServiceError
from genorch.services.ledger.client import LedgerClient
from genorch.services.orchestrator.client import OrchestratorClient
from genorch.services.training.service import TrainingService
from genorch.uow import UnitOfWorkFactory

logger = structlog.get_logger(__name__)

T = TypeVar("T")

JOB_NAME = "handle-long-trainings"
LOCK_KEY = f"lock:{JOB_NAME}"

MONITORED_STATUSES = (TrainingStatus.PROCESSING, TrainingStatus.SUBMITTED)
FAILED_EVENT_TYPES = ("Failed", "Deleted", "Expired")

REFUND_REASON = "Refund due to a long-running/failed training job."


class MonitorAction(str, Enum):
    KEEP = "keep"
    SKIP = "skip"
    RESUBMIT = "resubmit"
    IN_REVIEW = "in_review"
    FAIL = "fail"


@dataclass
class Decision:
    action: MonitorAction
    reason: str


@dataclass
class SweepResult:
    """Counters of one sweep, logged when it finishes."""

    total: int = 0
    successes: int = 0
    failed_to_fetch: int = 0
    transitions: int = 0
    refunds: int = 0
    resubmissions: int = 0
    errors: int = 0
    # Transactions already refunded (or claimed for refund) in this sweep
    refunded: set[str] = field(default_factory=set)

    def summary(self) -> dict[str, int]:
        return {
            "total": self.total,
            "successes": self.successes,
            "failed_to_fetch": self.failed_to_fetch,
            "transitions": self.transitions,
            "refunds": self.refunds,
            "resubmissions": self.resubmissions,
            "errors": self.errors,
        }


class TrainingMonitor:
    """Watchdog over long-running training jobs."""

    def __init__(
        self,
        uow_factory: UnitOfWorkFactory,
        orchestrator: OrchestratorClient,
        ledger: LedgerClient,
        training_service: TrainingService,
        settings: Settings,
    ):
        self.uow_factory = uow_factory
        self.orchestrator = orchestrator
        self.ledger = ledger
        self.training_service = training_service
        self.settings = settings

    async def sweep(self, dry_run: bool = False) -> SweepResult:
        """Evaluate every stale training job once.

        Args:
            dry_run: Log the decisions without writing state, refunding or resubmitting

        Returns:
            Sweep counters
        """
        now = utcnow()
        async with await self.uow_factory() as uow:
            state = await uow.system_state.get_state(JOB_NAME) or {}
            last_run = parse_datetime(state.get("last_run")) if isinstance(state, dict) else None
            runs = await uow.trainings.get_stale_runs(
                MONITORED_STATUSES,
                updated_after=now - timedelta(days=self.settings.training_monitor_lookback_days),
                updated_before=last_run or now,
            )

        result = SweepResult(total=len(runs))
        if runs:
            logger.info("training.monitor.found", count=len(runs), dry_run=dry_run)
            semaphore = asyncio.Semaphore(self.settings.training_monitor_concurrency)

            async def bounded(run: TrainingRun) -> None:
                async with semaphore:
                    await self._handle(run, now, result, dry_run)

            await asyncio.gather(*(bounded(run) for run in runs))
        else:
            logger.info("training.monitor.nothing_to_do")

        if not dry_run:
            async with await self.uow_factory() as uow:
                await uow.system_state.set_state(JOB_NAME, {"last_run": isoformat(now)})

        logger.info("training.monitor.finished", dry_run=dry_run, **result.summary())
        return result

    async def _handle(
        self, run: TrainingRun, now: datetime, result: SweepResult, dry_run: bool
    ) -> None:
        log = logger.bind(
            job_id=run.job_id,
            model_file_id=run.model_file_id,
            model_version_id=run.model_version_id,
            status=run.status.value if run.status else None,
        )
        try:
            decision = await self.decide(run, now)
            if (
                decision.action == MonitorAction.RESUBMIT
                and run.resubmission_count >= self.settings.max_training_retries
            ):
                decision = Decision(MonitorAction.FAIL, "resubmission limit reached")

            if dry_run:
                log.info(
                    "training.monitor.decision",
                    action=decision.action.value,
                    reason=decision.reason,
                )
                return

            # The state write and its refund complete together, even if the sweep
            # is cancelled or times out meanwhile
            apply = asyncio.ensure_future(self._apply(run, decision, result, log))
            try:
                handled = await asyncio.shield(apply)
            except asyncio.CancelledError:
                log.warning("training.monitor.finishing_before_cancel", action=decision.action.value)
                await asyncio.wait([apply])
                raise
            if handled:
                result.successes += 1
        except Exception as e:
            result.errors += 1
            log.error(
                "training.monitor.job_failed",
                error=str(e),
                error_type=type(e).__name__,
                important=True,
                exc_info=True,
            )

    async def decide(self, run: TrainingRun, now: Optional[datetime] = None) -> Decision:
        """Work out what to do with a run. Reads only."""
        now = now or utcnow()
        if not run.job_id:
            return Decision(MonitorAction.RESUBMIT, "no job id")

        try:
            events = await self._call(
                self.orchestrator.get_job_events(run.job_id, submitted_at=run.submitted_at, take=1)
            )
        except (ServiceError, asyncio.TimeoutError) as e:
            logger.warning(
                "training.monitor.events_unavailable",
                job_id=run.job_id,
                model_file_id=run.model_file_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            return Decision(MonitorAction.SKIP, "failed to fetch events")

        # No history yet: measure silence from the submission
        if events:
            event_type, event_time = events[0].type, events[0].date_time
        else:
            event_type, event_time = None, run.submitted_at

        if event_type == "Succeeded":
            if await self._has_epochs(run):
                return Decision(MonitorAction.IN_REVIEW, "succeeded")
            return Decision(MonitorAction.FAIL, "succeeded without epochs")

        if event_type in FAILED_EVENT_TYPES:
            return Decision(MonitorAction.FAIL, f"job {event_type.lower()}")

        silent = now - event_time
        if event_type == "Rejected" and silent > self._minutes(
            self.settings.training_rejected_timeout_minutes
        ):
            return Decision(MonitorAction.FAIL, "rejected too long")

        if run.status == TrainingStatus.SUBMITTED and silent > self._minutes(
            self.settings.training_submitted_timeout_minutes
        ):
            return await self._check_queue(run)

        if run.status == TrainingStatus.PROCESSING and silent > self._minutes(
            self.settings.training_processing_timeout_minutes
        ):
            return Decision(MonitorAction.FAIL, "no progress while processing")

        return Decision(MonitorAction.KEEP, "in progress")

    async def _check_queue(self, run: TrainingRun) -> Decision:
        if not run.job_id:
            return Decision(MonitorAction.RESUBMIT, "no job id")
        try:
            snapshot = await self._call(
                self.orchestrator.get_job(run.job_id, submitted_at=run.submitted_at)
            )
        except NotFoundError:
            snapshot = None
        except (ServiceError, asyncio.TimeoutError) as e:
            logger.warning(
                "training.monitor.queue_unavailable",
                job_id=run.job_id,
                model_file_id=run.model_file_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            return Decision(MonitorAction.SKIP, "failed to fetch queue position")

        if snapshot is not None and snapshot.service_providers:
            return Decision(MonitorAction.KEEP, "queued")
        return Decision(MonitorAction.RESUBMIT, "not in queue")

    async def _apply(self, run: TrainingRun, decision: Decision, result: SweepResult, log) -> bool:
        """Carry out a decision. Returns True if the job was handled."""
        if decision.action == MonitorAction.KEEP:
            return True
        if decision.action == MonitorAction.SKIP:
            result.failed_to_fetch += 1
            return False

        if decision.action == MonitorAction.RESUBMIT:
            log.info("training.monitor.resubmitting", reason=decision.reason, important=True)
            try:
                await self.training_service.create_training_request(run.model_version_id)
            except ServiceError as e:
                # Stays in its current state; the next sweep sees it again
                log.error(
                    "training.monitor.resubmit_failed",
                    error=str(e),
                    error_type=type(e).__name__,
                    important=True,
                )
                return False
            result.resubmissions += 1
            log.info("training.monitor.resubmitted", important=True)
            return True

        new_status = (
            TrainingStatus.IN_REVIEW
            if decision.action == MonitorAction.IN_REVIEW
            else TrainingStatus.FAILED
        )
        async with await self.uow_factory() as uow:
            await uow.trainings.update_status(run.model_version_id, new_status)
        result.transitions += 1
        log.info(
            "training.monitor.status_updated",
            new_status=new_status.value,
            reason=decision.reason,
            important=True,
        )

        if new_status == TrainingStatus.FAILED:
            return await self._refund(run, result, log)
        return True

    async def _refund(self, run: TrainingRun, result: SweepResult, log) -> bool:
        transaction_id = run.transaction_id
        if not transaction_id:
            log.error("training.refund.missing_transaction", important=True)
            return False
        if transaction_id in result.refunded:
            log.info("training.refund.duplicate_skipped", transaction_id=transaction_id)
            return True
        result.refunded.add(transaction_id)

        try:
            refunded = await self.ledger.refund_with_retries(transaction_id, REFUND_REASON)
        except asyncio.CancelledError:
            log.error(
                "ledger.refund.reconciliation_required",
                transaction_id=transaction_id,
                reason="refund cancelled after the run was marked failed",
                important=True,
            )
            raise
        if refunded:
            result.refunds += 1
            log.info("training.refund.completed", transaction_id=transaction_id)
        return refunded

    async def _has_epochs(self, run: TrainingRun) -> bool:
        async with await self.uow_factory() as uow:
            return await uow.trainings.has_epochs(run.model_file_id)

    async def _call(self, awaitable: Awaitable[T]) -> T:
        return await asyncio.wait_for(
            awaitable, timeout=self.settings.training_monitor_call_timeout_seconds
        )

    @staticmethod
    def _minutes(value: int) -> timedelta:
        return timedelta(minutes=value)


async def run_locked_sweep(
    monitor: TrainingMonitor, redis: Redis, settings: Settings, dry_run: bool = False
) -> Optional[SweepResult]:
    """Run one sweep unless another process holds the sweep lock.

    The lock expires with the sweep timeout so a crashed holder cannot block
    later sweeps.

    Returns:
        Sweep counters, or None if the sweep was skipped
    """
    token = uuid.uuid4().hex
    acquired = await redis.set(
        LOCK_KEY, token, nx=True, ex=settings.training_monitor_timeout_seconds
    )
    if not acquired:
        logger.info("training.monitor.locked", lock=LOCK_KEY)
        return None

    try:
        return await asyncio.wait_for(
            monitor.sweep(dry_run=dry_run), timeout=settings.training_monitor_timeout_seconds
        )
    finally:
        holder: Any = await redis.get(LOCK_KEY)
        if holder == token:
            await redis.delete(LOCK_KEY)


async def run_training_monitor(monitor: TrainingMonitor, redis: Redis, settings: Settings) -> None:
    """Main loop: one locked sweep per interval until cancelled."""
    logger.info(
        "worker.started",
        worker="training_monitor",
        interval=settings.training_monitor_interval_seconds,
        concurrency=settings.training_monitor_concurrency,
    )

    try:
        while True:
            try:
                await run_locked_sweep(monitor, redis, settings)
                await asyncio.sleep(settings.training_monitor_interval_seconds)

            except asyncio.CancelledError:
                # Propagate cancellation for graceful shutdown
                raise

            except Exception as e:
                # Sweep timeout or lock store outage - log and retry next interval
                logger.error(
                    "worker.error",
                    worker="training_monitor",
                    error_type=type(e).__name__,
                    error_message=str(e),
                    exc_info=True,
                )
                await asyncio.sleep(settings.training_monitor_interval_seconds)

    except asyncio.CancelledError:
        # Graceful shutdown
        logger.info("worker.stopped", worker="training_monitor")
        raise
