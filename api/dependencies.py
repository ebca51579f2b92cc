"""
FastAPI dependencies: X-API-Key check and the store, sink and scrape service
the routes run against.
"""

import secrets
from typing import Annotated

from fastapi import Depends, Header, HTTPException, Request, status

from lienflow.core.config import Settings, get_settings
from lienflow.database.connection import get_session_factory
from lienflow.database.repository import JobStore
from lienflow.services.sinks import Sink
from lienflow.services.trigger import ScrapeService
from lienflow.utils.logging import get_logger

logger = get_logger(__name__)

SettingsDep = Annotated[Settings, Depends(get_settings)]


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "ApiKey"},
    )


async def verify_api_key(
    settings: SettingsDep,
    x_api_key: Annotated[str | None, Header()] = None,
) -> str:
    """
    Compare X-API-Key against the configured key in constant time.

    With no key configured every request is rejected.
    """
    if x_api_key is None:
        logger.warning("api_key_missing")
        raise _unauthorized("Missing X-API-Key header")

    if not settings.api_key or not secrets.compare_digest(x_api_key, settings.api_key):
        logger.warning("api_key_rejected", configured=bool(settings.api_key))
        raise _unauthorized("Invalid API key")

    return x_api_key


async def get_job_store(settings: SettingsDep) -> JobStore:
    return JobStore(get_session_factory(), lease_seconds=settings.worker_lease_seconds)


async def get_sink(request: Request) -> Sink:
    """The sink built by the application lifespan."""
    return request.app.state.sink


async def get_scrape_service(
    store: Annotated[JobStore, Depends(get_job_store)],
    sink: Annotated[Sink, Depends(get_sink)],
    settings: SettingsDep,
) -> ScrapeService:
    return ScrapeService(store, sink, settings)


ApiKeyDep = Annotated[str, Depends(verify_api_key)]
JobStoreDep = Annotated[JobStore, Depends(get_job_store)]
ScrapeServiceDep = Annotated[ScrapeService, Depends(get_scrape_service)]
