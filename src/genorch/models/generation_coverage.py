"""GenerationCoverage entity - whether the orchestrator can run a model version."""

from sqlmodel import Field, SQLModel


class GenerationCoverage(SQLModel, table=True):
    """Coverage flag per model version, maintained by the publishing pipeline."""

    __tablename__ = "generation_coverage"  # type: ignore[assignment]

    model_version_id: int = Field(foreign_key="model_versions.id", primary_key=True)
    covered: bool = Field(default=False)
