"""Service facade exposing the converter operations to the HTTP layer.

All collaborators (database session factory, session store, media source,
transcoder, remote store) are injected at construction so tests can swap in
in-memory fakes.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy.ext.asyncio import async_sessionmaker

from config import Settings, settings
from services.accounts import AccountService, AccountSnapshot
from services.conversion_session import SessionStore, build_session_store
from services.credits import CreditService
from services.errors import SessionNotFound, UnsupportedMediaType
from services.formats import MEDIA_KINDS, available_formats, media_kind_from_mime
from services.media_source import HttpMediaSource
from services.pipeline import (
    OUTCOME_REJECTED,
    ConversionOutcome,
    ConversionPipeline,
    PipelinePolicy,
    PipelineState,
)
from services.referrals import ReferralLedger
from services.remote_store import build_remote_store
from services.storage_sweep import StorageSweep
from services.transcoder import FfmpegTranscoder
from services.usage import DailyUsageCounter

logger = logging.getLogger(__name__)

DEFAULT_EXTENSION_BY_KIND = {"video": ".mp4", "audio": ".mp3"}


@dataclass
class SessionTicket:
    session_id: str
    account_id: str
    media_kind: str
    display_name: str
    byte_size: int
    expires_at: datetime
    formats: List[Dict[str, str]]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "account_id": self.account_id,
            "media_kind": self.media_kind,
            "display_name": self.display_name,
            "byte_size": self.byte_size,
            "expires_at": self.expires_at.isoformat(),
            "formats": self.formats,
        }


class ConverterService:
    def __init__(
        self,
        *,
        accounts: AccountService,
        credits: CreditService,
        sessions: SessionStore,
        pipeline: ConversionPipeline,
        sweep: StorageSweep,
        session_ttl: timedelta,
    ):
        self.accounts = accounts
        self.credits = credits
        self.sessions = sessions
        self.pipeline = pipeline
        self.sweep = sweep
        self.session_ttl = session_ttl

    async def start_account(self, account_id: str, referrer_id: Optional[str] = None) -> AccountSnapshot:
        return await self.accounts.get_or_create(account_id, referrer_id=referrer_id)

    async def begin_session(
        self,
        account_id: str,
        *,
        source_ref: str,
        byte_size: int,
        media_kind: Optional[str] = None,
        display_name: Optional[str] = None,
        mime_type: Optional[str] = None,
    ) -> SessionTicket:
        """Check upload-time policy and open (or replace) the account's session."""
        kind = media_kind or media_kind_from_mime(mime_type)
        if kind not in MEDIA_KINDS:
            raise UnsupportedMediaType()

        await self.accounts.get_or_create(account_id)
        await self.pipeline.validate(account_id, byte_size)

        if not display_name:
            stamp = int(datetime.now(timezone.utc).timestamp() * 1000)
            display_name = f"{kind}_{stamp}{DEFAULT_EXTENSION_BY_KIND[kind]}"

        session = await self.sessions.open(
            account_id,
            source_ref=source_ref,
            media_kind=kind,
            display_name=display_name,
            byte_size=byte_size,
            ttl=self.session_ttl,
        )
        logger.info("Opened session %s for account %s (%s)", session.session_id, account_id, kind)
        return SessionTicket(
            session_id=session.session_id,
            account_id=account_id,
            media_kind=kind,
            display_name=session.display_name,
            byte_size=session.byte_size,
            expires_at=session.expires_at,
            formats=available_formats(kind),
        )

    async def cancel_session(self, account_id: str) -> bool:
        return await self.sessions.cancel(account_id)

    async def select_format(self, account_id: str, fmt: str) -> ConversionOutcome:
        """Consume the account's session and drive it through the pipeline."""
        await self.accounts.get_or_create(account_id)
        try:
            session = await self.sessions.take_and_clear(account_id)
        except SessionNotFound as exc:
            logger.info("No live session for account %s", account_id)
            return ConversionOutcome(
                status=OUTCOME_REJECTED,
                state=PipelineState.FAILED,
                format=fmt,
                code=exc.code,
                message=exc.message,
                failed_at=PipelineState.PENDING,
            )
        return await self.pipeline.run(session, fmt)

    async def get_balance(self, account_id: str) -> int:
        account = await self.accounts.get_or_create(account_id)
        return account.credits

    async def adjust_credits(self, account_id: str, delta: int) -> int:
        return await self.credits.apply(
            account_id,
            int(delta),
            entry_type="admin_adjust",
            reason="Administrative adjustment",
        )

    async def reset_account(self, account_id: str) -> AccountSnapshot:
        snapshot = await self.accounts.reset(account_id)
        await self.sessions.cancel(account_id)
        return snapshot

    async def get_stats(self) -> Dict[str, Any]:
        return await self.accounts.get_stats()

    async def run_sweep(self) -> int:
        report = await self.sweep.run()
        return report.reclaimed


def build_converter_service(
    config: Settings = settings,
    session_maker: Optional[async_sessionmaker] = None,
    *,
    sessions: Optional[SessionStore] = None,
    media_source=None,
    transcoder=None,
    remote_store=None,
) -> ConverterService:
    if session_maker is None:
        from database import async_session_maker as session_maker

    remote_store = remote_store or build_remote_store(
        config.STORAGE_BACKEND,
        storage_dir=config.STORAGE_DIR,
        base_url=config.STORAGE_BASE_URL,
        api_token=config.STORAGE_API_TOKEN,
        timeout_seconds=float(config.STAGE_TIMEOUT_SECONDS),
    )
    credits = CreditService(session_maker)
    accounts = AccountService(
        session_maker,
        initial_credits=config.INITIAL_CREDITS,
        referrals=ReferralLedger(config.REFERRAL_BONUS),
    )
    pipeline = ConversionPipeline(
        session_maker,
        credits=credits,
        accounts=accounts,
        usage=DailyUsageCounter(session_maker, config.DAILY_LIMIT),
        media_source=media_source
        or HttpMediaSource(
            config.MEDIA_SOURCE_BASE_URL,
            max_bytes=config.max_file_size_bytes,
            timeout_seconds=float(config.DOWNLOAD_TIMEOUT_SECONDS),
        ),
        transcoder=transcoder or FfmpegTranscoder(),
        remote_store=remote_store,
        policy=PipelinePolicy(
            cost_per_conversion=config.CREDIT_PER_CONVERSION,
            max_file_size_bytes=config.max_file_size_bytes,
            retention=timedelta(hours=config.FILE_DELETE_AFTER_HOURS),
            download_timeout_seconds=config.DOWNLOAD_TIMEOUT_SECONDS,
            transcode_timeout_seconds=config.TRANSCODE_TIMEOUT_SECONDS,
            stage_timeout_seconds=config.STAGE_TIMEOUT_SECONDS,
        ),
        work_dir=config.WORK_DIR,
    )
    return ConverterService(
        accounts=accounts,
        credits=credits,
        sessions=sessions or build_session_store(config.SESSION_BACKEND, config.REDIS_URL),
        pipeline=pipeline,
        sweep=StorageSweep(session_maker, remote_store),
        session_ttl=timedelta(minutes=config.SESSION_TTL_MINUTES),
    )


async def process_storage_sweep_job_async() -> int:
    service = build_converter_service()
    return await service.run_sweep()


def process_storage_sweep_job() -> int:
    """RQ worker entrypoint for storage sweep jobs."""
    reclaimed = asyncio.run(process_storage_sweep_job_async())
    logger.info("Queued storage sweep reclaimed %s records", reclaimed)
    return reclaimed
