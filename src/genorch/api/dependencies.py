"""FastAPI dependencies for request context and common operations.

This module provides reusable FastAPI dependencies for:
- Caller identity (resolved upstream and forwarded as headers)
- Access to the services built in the application lifespan
"""

from typing import Annotated

from fastapi import Depends, Header, HTTPException, Request, status

from genorch.core.config import Settings
from genorch.schemas.generation import SessionUser
from genorch.services.generation.service import GenerationService
from genorch.services.training.service import TrainingService
from genorch.uow import UnitOfWorkFactory


def get_settings() -> Settings:
    """Get application settings instance.

    Returns:
        Settings instance loaded from environment variables.
    """
    return Settings()  # type: ignore[call-arg]  # Pydantic loads from env vars


async def get_session_user(
    x_user_id: Annotated[int | None, Header()] = None,
    x_user_tier: Annotated[str | None, Header()] = None,
    x_user_moderator: Annotated[bool, Header()] = False,
) -> SessionUser:
    """Resolve the caller from headers set by the authenticating gateway.

    Authentication itself happens upstream; this service trusts the forwarded
    identity.

    Raises:
        HTTPException: 401 Unauthorized if X-User-Id is missing
    """
    if x_user_id is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing X-User-Id header"
        )
    return SessionUser(id=x_user_id, tier=x_user_tier or "free", is_moderator=x_user_moderator)


def get_uow_factory(request: Request) -> UnitOfWorkFactory:
    """Get UnitOfWork factory from app state."""
    return request.app.state.uow_factory


def get_generation_service(request: Request) -> GenerationService:
    """Get the generation orchestrator built in the app lifespan.

    Example:
        >>> @router.post("/endpoint")
        >>> async def endpoint(service=Depends(get_generation_service)):
        ...     return await service.get_generation_status()
    """
    return request.app.state.generation_service


def get_training_service(request: Request) -> TrainingService:
    """Get the training service built in the app lifespan."""
    return request.app.state.training_service


CurrentUser = Annotated[SessionUser, Depends(get_session_user)]
