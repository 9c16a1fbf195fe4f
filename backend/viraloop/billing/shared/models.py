from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, Field


class CreditAttribution(BaseModel):
    user_id: Optional[str] = None
    influencer_id: Optional[str] = None
    post_id: Optional[str] = None
    platform: Optional[str] = None
    spending_type: Optional[str] = None
    amount_total: Optional[int] = None
    stripe_session_id: Optional[str] = None
    stripe_invoice_id: Optional[str] = None


class SpendResult(BaseModel):
    credits_used: int
    new_balance: Optional[int] = None


class GrantResult(BaseModel):
    applied: bool
    credits_added: int = 0
    new_balance: Optional[int] = None


class BalanceCheck(BaseModel):
    allowed: bool
    credits: int
    required: int
    remaining: Optional[int] = None


class UsageCheck(BaseModel):
    allowed: bool
    kind: str
    limit: int = 0
    used: int = 0
    remaining: int = 0
    reason: Optional[str] = None
    message: Optional[str] = None


class CheckCreditsRequest(BaseModel):
    amount: int = Field(ge=0)


class SpendCreditsRequest(BaseModel):
    amount: int = Field(ge=0)
    attribution: CreditAttribution = Field(default_factory=CreditAttribution)


class SpinRequest(BaseModel):
    user_id: str


class LedgerEntryResponse(BaseModel):
    id: str
    credits: int
    type: str
    amount_total: Optional[int] = None
    spending_type: Optional[str] = None
    platform: Optional[str] = None
    influencer_id: Optional[str] = None
    post_id: Optional[str] = None
    user_id: Optional[str] = None
    created_at: datetime


class CreditHistoryResponse(BaseModel):
    team_id: str
    credits: int
    entries: List[LedgerEntryResponse]


class DailySpending(BaseModel):
    date: str
    credits: int


class CreditAnalyticsResponse(BaseModel):
    team_id: str
    credits: int
    total_spent: int
    total_added: int
    spending_by_type: List[Dict]
    added_by_type: List[Dict]
    daily_spending: List[DailySpending]
