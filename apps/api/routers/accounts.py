"""Account router: first contact, balance and referral info."""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from routers.auth_scope import get_auth_context
from routers.deps import get_converter_service
from services.converter import ConverterService
from services.session_token import ServiceIdentity
from services.referrals import build_referral_payload, parse_referral_payload

router = APIRouter()


class StartRequest(BaseModel):
    referrer_id: Optional[str] = Field(default=None, max_length=64)
    start_payload: Optional[str] = Field(default=None, max_length=128)


@router.post("/{account_id}/start")
async def start_account(
    account_id: str,
    request: StartRequest,
    auth: ServiceIdentity = Depends(get_auth_context),
    service: ConverterService = Depends(get_converter_service),
):
    """Get-or-create the account; a referral only counts on creation."""
    referrer_id = request.referrer_id or parse_referral_payload(request.start_payload)
    account = await service.start_account(account_id, referrer_id=referrer_id)
    return {
        "account_id": account.id,
        "credits": account.credits,
        "referral_count": account.referral_count,
        "created": account.created,
        "referral_awarded": account.referral_awarded,
    }


@router.get("/{account_id}/balance")
async def get_balance(
    account_id: str,
    auth: ServiceIdentity = Depends(get_auth_context),
    service: ConverterService = Depends(get_converter_service),
):
    return {"account_id": account_id, "balance": await service.get_balance(account_id)}


@router.get("/{account_id}/referral")
async def get_referral(
    account_id: str,
    auth: ServiceIdentity = Depends(get_auth_context),
    service: ConverterService = Depends(get_converter_service),
):
    account = await service.start_account(account_id)
    return {
        "account_id": account.id,
        "start_payload": build_referral_payload(account.id),
        "referral_count": account.referral_count,
    }


@router.get("/{account_id}/ledger")
async def get_ledger(
    account_id: str,
    auth: ServiceIdentity = Depends(get_auth_context),
    service: ConverterService = Depends(get_converter_service),
):
    account = await service.start_account(account_id)
    return {
        "account_id": account.id,
        "balance": account.credits,
        "recent_entries": await service.credits.recent_entries(account.id),
    }
