"""Administrative router: credit adjustments, resets, stats and sweeps."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from routers.auth_scope import require_admin
from routers.deps import get_converter_service, http_error
from services.converter import ConverterService
from services.session_token import ServiceIdentity
from services.errors import AccountNotFound, InsufficientCredits

router = APIRouter()
logger = logging.getLogger(__name__)


class AdjustCreditsRequest(BaseModel):
    delta: int = Field(ge=-100000, le=100000)


@router.post("/accounts/{account_id}/credits")
async def adjust_credits(
    account_id: str,
    request: AdjustCreditsRequest,
    auth: ServiceIdentity = Depends(require_admin),
    service: ConverterService = Depends(get_converter_service),
):
    try:
        balance = await service.adjust_credits(account_id, request.delta)
    except AccountNotFound as exc:
        raise http_error(exc) from exc
    except InsufficientCredits as exc:
        raise http_error(exc, status_code=422) from exc
    logger.info("Admin %s adjusted %s by %s", auth.client_id, account_id, request.delta)
    return {"ok": True, "account_id": account_id, "delta": request.delta, "balance_after": balance}


@router.post("/accounts/{account_id}/reset")
async def reset_account(
    account_id: str,
    auth: ServiceIdentity = Depends(require_admin),
    service: ConverterService = Depends(get_converter_service),
):
    try:
        account = await service.reset_account(account_id)
    except AccountNotFound as exc:
        raise http_error(exc) from exc
    logger.info("Admin %s reset %s", auth.client_id, account_id)
    return {"ok": True, "account_id": account.id, "credits": account.credits}


@router.get("/stats")
async def get_stats(
    auth: ServiceIdentity = Depends(require_admin),
    service: ConverterService = Depends(get_converter_service),
):
    return await service.get_stats()


@router.post("/sweep")
async def run_sweep(
    auth: ServiceIdentity = Depends(require_admin),
    service: ConverterService = Depends(get_converter_service),
):
    return {"reclaimed": await service.run_sweep()}
