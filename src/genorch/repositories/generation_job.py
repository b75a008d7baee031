"""GenerationJob repository.

Provides data access methods for GenerationJob pointer rows.
"""

from datetime import datetime

from sqlalchemy import and_, delete, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from genorch.models.generation_job import GenerationJob


class GenerationJobRepository:
    """Repository for GenerationJob entities.

    Rows are written after a successful submission and double as the
    analytical source for quota seeding.
    """

    def __init__(self, session: AsyncSession):
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session for database operations
        """
        self.session = session

    async def add(self, job: GenerationJob) -> GenerationJob:
        """Persist a new generation job pointer.

        Args:
            job: GenerationJob entity to persist

        Returns:
            Persisted job
        """
        self.session.add(job)
        await self.session.flush()
        return job

    async def get_by_job_id(self, job_id: str) -> GenerationJob | None:
        return await self.session.get(GenerationJob, job_id)

    async def count_images_since(self, user_id: int, since: datetime) -> int:
        """Sum of images requested by a user since ``since``.

        Args:
            user_id: Requesting user
            since: Start of the rolling window (naive UTC)

        Returns:
            Total quantity across the user's jobs in the window (0 if none)
        """
        result = await self.session.execute(
            select(func.coalesce(func.sum(GenerationJob.quantity), 0)).where(  # type: ignore[arg-type]
                GenerationJob.user_id == user_id,  # type: ignore[arg-type]
                GenerationJob.created_at >= since,  # type: ignore[arg-type]
            )
        )
        return int(result.scalar_one())

    async def list_for_user(
        self, user_id: int, limit: int, before: GenerationJob | None = None
    ) -> list[GenerationJob]:
        """A user's jobs, newest first.

        Args:
            user_id: Owner of the jobs
            limit: Maximum number of rows
            before: Last row of the previous page; only older rows are returned

        Returns:
            Up to ``limit`` jobs ordered by (created_at, job_id) descending
        """
        query = select(GenerationJob).where(GenerationJob.user_id == user_id)  # type: ignore[arg-type]
        if before is not None:
            query = query.where(
                or_(
                    GenerationJob.created_at < before.created_at,  # type: ignore[arg-type]
                    and_(
                        GenerationJob.created_at == before.created_at,  # type: ignore[arg-type]
                        GenerationJob.job_id < before.job_id,  # type: ignore[arg-type]
                    ),
                )
            )
        query = query.order_by(
            GenerationJob.created_at.desc(),  # type: ignore[attr-defined]
            GenerationJob.job_id.desc(),  # type: ignore[attr-defined]
        ).limit(limit)
        result = await self.session.execute(query)
        return list(result.scalars().all())

    async def delete_by_job_ids(self, job_ids: list[str]) -> int:
        """Remove pointer rows. Returns the number of rows deleted."""
        if not job_ids:
            return 0
        result = await self.session.execute(
            delete(GenerationJob).where(GenerationJob.job_id.in_(job_ids))  # type: ignore[attr-defined]
        )
        return result.rowcount
