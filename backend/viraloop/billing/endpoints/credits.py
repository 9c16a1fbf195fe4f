from typing import Dict

from fastapi import APIRouter, Depends, HTTPException, Query  # type: ignore

from viraloop.context import AppContext
from viraloop.utils.logger import logger
from viraloop.billing.config import CREDITS_REQUIRED
from viraloop.billing.shared.exceptions import SpinNotAllowedError, TeamNotFoundError
from viraloop.billing.shared.models import (
    BalanceCheck,
    CheckCreditsRequest,
    CreditAnalyticsResponse,
    CreditHistoryResponse,
    SpendCreditsRequest,
    SpendResult,
    SpinRequest,
    UsageCheck,
)
from viraloop.billing.credits.usage import USAGE_KINDS
from .dependencies import get_ctx

router = APIRouter(tags=["billing-credits"])


@router.get("/credits/costs")
async def get_credit_costs() -> Dict:
    return {'costs': CREDITS_REQUIRED}


@router.get("/teams/{team_id}/credits")
async def get_credits(team_id: str, ctx: AppContext = Depends(get_ctx)) -> Dict:
    summary = await ctx.credit_manager.get_team_summary(team_id)
    if summary is None:
        raise HTTPException(status_code=404, detail="Team not found")
    return summary


@router.post("/teams/{team_id}/credits/check", response_model=BalanceCheck)
async def check_credits(team_id: str, body: CheckCreditsRequest, ctx: AppContext = Depends(get_ctx)) -> BalanceCheck:
    return await ctx.credit_manager.check_balance(team_id, body.amount)


@router.post("/teams/{team_id}/credits/spend", response_model=SpendResult)
async def spend_credits(team_id: str, body: SpendCreditsRequest, ctx: AppContext = Depends(get_ctx)) -> SpendResult:
    # InsufficientCreditsError and TeamNotFoundError are mapped by the app-level handlers
    return await ctx.credit_manager.spend(team_id, body.amount, body.attribution)


@router.get("/teams/{team_id}/credits/history", response_model=CreditHistoryResponse)
async def get_credit_history(
    team_id: str,
    limit: int = Query(100, ge=1, le=100),
    ctx: AppContext = Depends(get_ctx),
) -> Dict:
    try:
        return await ctx.history.list_history(team_id, limit=limit)
    except TeamNotFoundError:
        raise HTTPException(status_code=404, detail="Team not found")


@router.get("/teams/{team_id}/credits/analytics", response_model=CreditAnalyticsResponse)
async def get_credit_analytics(team_id: str, ctx: AppContext = Depends(get_ctx)) -> Dict:
    try:
        return await ctx.history.analytics(team_id)
    except TeamNotFoundError:
        raise HTTPException(status_code=404, detail="Team not found")


@router.get("/teams/{team_id}/usage")
async def get_usage(team_id: str, ctx: AppContext = Depends(get_ctx)) -> Dict:
    usage = await ctx.usage.get_usage(team_id)
    if usage is None:
        raise HTTPException(status_code=404, detail="Team not found")
    return usage


@router.post("/teams/{team_id}/usage/{kind}", response_model=UsageCheck)
async def consume_usage(team_id: str, kind: str, ctx: AppContext = Depends(get_ctx)) -> UsageCheck:
    if kind not in USAGE_KINDS:
        raise HTTPException(status_code=400, detail=f"Unknown usage kind: {kind}")
    result = await ctx.usage.check_and_increment(team_id, kind)
    if result.reason == "team_not_found":
        raise HTTPException(status_code=404, detail="Team not found")
    return result


@router.post("/teams/{team_id}/wheel/spin")
async def spin_wheel(team_id: str, body: SpinRequest, ctx: AppContext = Depends(get_ctx)) -> Dict:
    try:
        return await ctx.wheel.spin(team_id, body.user_id)
    except SpinNotAllowedError as e:
        status_code = 429 if e.reason == "cooldown" else 403
        logger.info(f"[WHEEL] Spin refused for user {body.user_id}: {e.reason}")
        raise HTTPException(status_code=status_code, detail=e.to_dict())
    except TeamNotFoundError:
        raise HTTPException(status_code=404, detail="Team not found")


@router.get("/teams/{team_id}/wheel/status")
async def wheel_status(team_id: str, user_id: str = Query(...), ctx: AppContext = Depends(get_ctx)) -> Dict:
    try:
        return await ctx.wheel.status(team_id, user_id)
    except TeamNotFoundError:
        raise HTTPException(status_code=404, detail="Team not found")
