"""ModelFile entity - files attached to a model version, incl. training data."""

from typing import Optional

from sqlalchemy import JSON, Column
from sqlmodel import Field, SQLModel

TRAINING_DATA_FILE_TYPE = "Training Data"


class ModelFile(SQLModel, table=True):
    """ModelFile holds training results in its metadata blob.

    ``file_metadata["trainingResults"]`` layout::

        {
            "jobId": str | None,
            "transactionId": str | None,
            "submittedAt": ISO-8601 str | None,
            "history": [{"time": str, "status": str, "jobId": str | None}],
            "epochs": [...],
        }
    """

    __tablename__ = "model_files"  # type: ignore[assignment]

    id: int = Field(primary_key=True)
    model_version_id: int = Field(foreign_key="model_versions.id", index=True)
    type: str = Field(max_length=50)
    url: str = Field()
    file_metadata: Optional[dict] = Field(default=None, sa_column=Column(JSON))

    @property
    def training_results(self) -> dict:
        return dict((self.file_metadata or {}).get("trainingResults") or {})
