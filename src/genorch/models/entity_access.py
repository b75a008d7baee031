"""EntityAccess entity - grants a user access to a private entity."""

from sqlmodel import Field, SQLModel


class EntityAccess(SQLModel, table=True):
    """Access grant for a private entity (e.g. a private ModelVersion)."""

    __tablename__ = "entity_access"  # type: ignore[assignment]

    entity_id: int = Field(primary_key=True)
    entity_type: str = Field(primary_key=True, max_length=50)
    accessor_id: int = Field(primary_key=True)
