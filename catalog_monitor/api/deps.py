"""FastAPI dependencies."""

from typing import AsyncIterator

from fastapi import Depends, Header, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from catalog_monitor.actions.processor import ActionProcessor
from catalog_monitor.config import Settings
from catalog_monitor.db.session import get_db
from catalog_monitor.worker.runner import TaskRunner


def get_runner(request: Request) -> TaskRunner:
    """The task runner built by the application lifespan."""
    return request.app.state.runner


def get_settings(runner: TaskRunner = Depends(get_runner)) -> Settings:
    return runner.settings


def get_processor(runner: TaskRunner = Depends(get_runner)) -> ActionProcessor:
    return runner.processor


async def get_database(runner: TaskRunner = Depends(get_runner)) -> AsyncIterator[AsyncSession]:
    """Dependency for database session."""
    async for session in get_db(runner.session_factory):
        yield session


async def get_creator_id(
    x_creator_id: str = Header(..., alias="X-Creator-Id"),
) -> str:
    """
    Creator id set by the upstream auth layer.

    Raises:
        HTTPException: 401 if the header is empty
    """
    if not x_creator_id.strip():
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing creator identity",
        )
    return x_creator_id.strip()


async def require_admin_api_key(
    x_admin_api_key: str = Header(..., alias="X-Admin-API-Key"),
    settings: Settings = Depends(get_settings),
) -> None:
    """
    Dependency to require admin API key for protected endpoints.

    Args:
        x_admin_api_key: Admin API key from X-Admin-API-Key header

    Raises:
        HTTPException: 503 if no key is configured, 403 if invalid
    """
    if not settings.admin_api_key:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Admin API key not configured"
        )

    if x_admin_api_key != settings.admin_api_key:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid admin API key"
        )
