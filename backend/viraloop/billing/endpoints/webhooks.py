from typing import Dict

from fastapi import APIRouter, Depends, Request  # type: ignore

from viraloop.context import AppContext
from .dependencies import get_ctx

router = APIRouter(tags=["billing-webhooks"])


@router.post("/webhook")
async def stripe_webhook(request: Request, ctx: AppContext = Depends(get_ctx)) -> Dict:
    payload = await request.body()
    return await ctx.webhooks.process_stripe_webhook(payload, request.headers.get('stripe-signature'))
