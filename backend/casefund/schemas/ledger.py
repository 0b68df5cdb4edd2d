"""Pydantic schemas for ledger endpoints"""
from decimal import Decimal
from typing import Literal, Optional

from pydantic import BaseModel, Field


class CheckoutRequest(BaseModel):
    intent: Literal["wallet_deposit", "case_donation", "platform_donation"]
    amount: Decimal = Field(..., decimal_places=2)
    case_id: Optional[int] = None
    success_url: Optional[str] = None
    cancel_url: Optional[str] = None


class BankDetails(BaseModel):
    account_holder: str = Field(..., min_length=1, max_length=255)
    iban: str = Field(..., min_length=15, max_length=34)
    bank_name: Optional[str] = None


class WithdrawalCreateRequest(BaseModel):
    amount: Decimal = Field(..., decimal_places=2)
    bank_details: BankDetails


class WebhookRetryRequest(BaseModel):
    failure_id: int
    force: bool = False
