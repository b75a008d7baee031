"""Unit of Work pattern tests.

Tests focus on transaction management:
- Successful commits persist changes
- Exceptions trigger rollback
- Multiple repository operations are atomic
"""

import pytest

from genorch.models import GenerationJob


@pytest.mark.asyncio
async def test_uow_commits_on_successful_exit(uow_factory):
    """Test that UoW commits changes when exiting successfully.

    Changes made within the context should persist after the context exits.
    """
    async with await uow_factory() as uow:
        await uow.generation_jobs.add(GenerationJob(job_id="job-1", user_id=7, quantity=4))
        # Context exits successfully - should commit

    # Verify changes persisted in a new UoW context
    async with await uow_factory() as uow:
        found = await uow.generation_jobs.get_by_job_id("job-1")
        assert found is not None
        assert found.quantity == 4


@pytest.mark.asyncio
async def test_uow_rollback_on_exception(uow_factory):
    """Test that UoW rolls back changes when an exception occurs.

    If an exception is raised within the context:
    1. Changes should be rolled back
    2. Exception should propagate (not be swallowed)
    """
    with pytest.raises(ValueError, match="Simulated error"):
        async with await uow_factory() as uow:
            await uow.generation_jobs.add(GenerationJob(job_id="job-1", user_id=7))
            raise ValueError("Simulated error")

    async with await uow_factory() as uow:
        assert await uow.generation_jobs.get_by_job_id("job-1") is None


@pytest.mark.asyncio
async def test_uow_multiple_operations_atomic(uow_factory):
    """Test that multiple repository operations are atomic.

    A job pointer and a state entry written in one UoW either both persist or
    neither does.
    """
    with pytest.raises(RuntimeError):
        async with await uow_factory() as uow:
            await uow.generation_jobs.add(GenerationJob(job_id="job-1", user_id=7))
            await uow.system_state.set_state("handle-long-trainings", {"last_run": "x"})
            raise RuntimeError("Simulated failure after both writes")

    async with await uow_factory() as uow:
        assert await uow.generation_jobs.get_by_job_id("job-1") is None
        assert await uow.system_state.get_state("handle-long-trainings") is None

    async with await uow_factory() as uow:
        await uow.generation_jobs.add(GenerationJob(job_id="job-1", user_id=7))
        await uow.system_state.set_state("handle-long-trainings", {"last_run": "x"})

    async with await uow_factory() as uow:
        assert await uow.generation_jobs.get_by_job_id("job-1") is not None
        assert await uow.system_state.get_state("handle-long-trainings") == {"last_run": "x"}


@pytest.mark.asyncio
async def test_uow_exposes_all_repositories(uow_factory):
    async with await uow_factory() as uow:
        assert uow.resources.session is uow.session
        assert uow.trainings.session is uow.session
        assert uow.generation_jobs.session is uow.session
        assert uow.system_state.session is uow.session
