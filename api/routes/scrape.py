"""
POST /scrape: run a discovery scan for a date window and wait for it.
"""

from fastapi import APIRouter, status
from fastapi.responses import JSONResponse

from api.dependencies import ApiKeyDep, ScrapeServiceDep
from lienflow.models.jobs import ErrorResponse, ScrapeRequest, ScrapeResponse
from lienflow.utils.exceptions import DateRangeError, LienflowError, SourceNotSupportedError
from lienflow.utils.logging import get_logger

logger = get_logger(__name__)

router = APIRouter(tags=["Scrape"])


def _error(status_code: int, error: LienflowError | Exception) -> JSONResponse:
    if isinstance(error, LienflowError):
        body = ErrorResponse(error=error.message, details=error.details)
    else:
        body = ErrorResponse(error=str(error))
    return JSONResponse(status_code=status_code, content=body.model_dump(mode="json"))


@router.post(
    "/scrape",
    response_model=ScrapeResponse,
    responses={400: {"model": ErrorResponse}, 500: {"model": ErrorResponse}},
    summary="Run a discovery scrape",
    description="Search the source for a date window and deliver or enqueue what is found.",
)
async def scrape(
    request: ScrapeRequest,
    service: ScrapeServiceDep,
    _api_key: ApiKeyDep,
) -> ScrapeResponse | JSONResponse:
    """
    Run a scrape and wait for it to finish.

    Returns:
        ScrapeResponse with counts, or an ErrorResponse body (400 for an
        unknown site or a bad window, 500 for anything else)
    """
    logger.info(
        "scrape_requested",
        site=request.site,
        date_start=request.date_start,
        date_end=request.date_end,
        mode=request.mode.value,
    )

    try:
        return await service.scrape(request)
    except (SourceNotSupportedError, DateRangeError) as e:
        logger.warning("scrape_rejected", error=e.message)
        return _error(status.HTTP_400_BAD_REQUEST, e)
    except Exception as e:
        logger.exception("scrape_failed", error=str(e))
        return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, e)
