"""GenerationJob entity - local pointer to a submitted image generation job."""

from datetime import datetime
from typing import Optional

from sqlmodel import Field, SQLModel

from genorch.core.timezone import utcnow


class GenerationJob(SQLModel, table=True):
    """GenerationJob records the remote job id and ledger transaction of a submission.

    Rows are also the analytical source used to seed the per-user quota counter.
    """

    __tablename__ = "generation_jobs"  # type: ignore[assignment]

    job_id: str = Field(primary_key=True, max_length=255)
    user_id: int = Field(index=True)
    quantity: int = Field(default=1, ge=1)
    cost: int = Field(default=0, ge=0)
    transaction_id: Optional[str] = Field(default=None, max_length=255)
    created_at: datetime = Field(default_factory=utcnow, index=True)
