from fastapi import APIRouter, FastAPI, Request  # type: ignore
from fastapi.responses import JSONResponse

from viraloop.utils.logger import logger
from .endpoints.credits import router as credits_router
from .endpoints.webhooks import router as webhooks_router
from .shared.exceptions import BillingError, InsufficientCreditsError, TeamNotFoundError

router = APIRouter(prefix="/billing", tags=["billing"])

router.include_router(credits_router, include_in_schema=True)
router.include_router(webhooks_router, include_in_schema=True)


async def insufficient_credits_handler(request: Request, exc: InsufficientCreditsError) -> JSONResponse:
    return JSONResponse(status_code=402, content=exc.to_dict())


async def team_not_found_handler(request: Request, exc: TeamNotFoundError) -> JSONResponse:
    return JSONResponse(status_code=404, content={'error_type': 'team_not_found', 'message': str(exc)})


async def billing_error_handler(request: Request, exc: BillingError) -> JSONResponse:
    logger.warning(f"[BILLING] {type(exc).__name__} on {request.url.path}: {exc}")
    return JSONResponse(status_code=400, content={'error_type': 'billing_error', 'message': str(exc)})


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(InsufficientCreditsError, insufficient_credits_handler)
    app.add_exception_handler(TeamNotFoundError, team_not_found_handler)
    app.add_exception_handler(BillingError, billing_error_handler)


__all__ = ['router', 'register_exception_handlers']
