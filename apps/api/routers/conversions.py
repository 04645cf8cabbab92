"""Conversion router: upload sessions and format selection."""

from __future__ import annotations

from typing import Literal, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from routers.auth_scope import get_auth_context
from routers.deps import get_converter_service, http_error
from routers.rate_limit import rate_limit
from services.converter import ConverterService
from services.session_token import ServiceIdentity
from services.errors import PolicyRejection
from services.formats import available_formats

router = APIRouter()


class BeginSessionRequest(BaseModel):
    source_ref: str = Field(min_length=1, max_length=2000)
    byte_size: int = Field(ge=0)
    media_kind: Optional[Literal["video", "audio"]] = None
    mime_type: Optional[str] = Field(default=None, max_length=255)
    display_name: Optional[str] = Field(default=None, max_length=255)


class SelectFormatRequest(BaseModel):
    format: str = Field(min_length=1, max_length=16)


@router.get("/formats")
async def list_formats(
    media_kind: Literal["video", "audio"] = Query(...),
    auth: ServiceIdentity = Depends(get_auth_context),
):
    return {"media_kind": media_kind, "formats": available_formats(media_kind)}


@router.post("/{account_id}/session")
async def begin_session(
    account_id: str,
    request: BeginSessionRequest,
    _rate_limit: None = Depends(rate_limit("session_begin", limit=60, window_seconds=3600)),
    auth: ServiceIdentity = Depends(get_auth_context),
    service: ConverterService = Depends(get_converter_service),
):
    """Accept an upload and open the account's conversion session."""
    try:
        ticket = await service.begin_session(
            account_id,
            source_ref=request.source_ref,
            byte_size=request.byte_size,
            media_kind=request.media_kind,
            mime_type=request.mime_type,
            display_name=request.display_name,
        )
    except PolicyRejection as exc:
        raise http_error(exc) from exc
    return ticket.to_dict()


@router.delete("/{account_id}/session")
async def cancel_session(
    account_id: str,
    auth: ServiceIdentity = Depends(get_auth_context),
    service: ConverterService = Depends(get_converter_service),
):
    return {"account_id": account_id, "cancelled": await service.cancel_session(account_id)}


@router.post("/{account_id}/session/select")
async def select_format(
    account_id: str,
    request: SelectFormatRequest,
    auth: ServiceIdentity = Depends(get_auth_context),
    service: ConverterService = Depends(get_converter_service),
):
    """Consume the session and run the conversion to a terminal state."""
    outcome = await service.select_format(account_id, request.format)
    return outcome.to_dict()
