"""Conversion pipeline: download -> transcode -> stage -> settle -> deliver.

One ``run`` walks a single consumed session to a terminal state. Download,
transcode and stage are the slow steps and hold no ledger or session lock; the
only critical section is the conditional debit in settle.
"""

from __future__ import annotations

import asyncio
import logging
import shutil
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from sqlalchemy.ext.asyncio import async_sessionmaker

from models.conversion_record import ConversionRecord
from services.accounts import AccountService
from services.conversion_session import ConversionSession
from services.credits import CreditService, apply_credit_delta
from services.errors import (
    GENERIC_RETRY_MESSAGE,
    DailyLimitReached,
    DownloadFailed,
    FileTooLarge,
    InsufficientCredits,
    InvariantViolation,
    PolicyRejection,
    StageFailed,
    TranscodeFailed,
    TransientFailure,
)
from services.formats import TranscodeProfile, build_profile, format_file_size
from services.transcoder import output_path_for
from services.usage import DailyUsageCounter

logger = logging.getLogger(__name__)


class PipelineState(str, Enum):
    PENDING = "pending"
    VALIDATED = "validated"
    DOWNLOADED = "downloaded"
    TRANSCODED = "transcoded"
    STAGED = "staged"
    SETTLED = "settled"
    DELIVERED = "delivered"
    FAILED = "failed"


OUTCOME_DELIVERED = "delivered"
OUTCOME_REJECTED = "rejected"
OUTCOME_FAILED = "failed"


@dataclass
class PipelinePolicy:
    cost_per_conversion: int
    max_file_size_bytes: int
    retention: timedelta
    download_timeout_seconds: Optional[float] = None
    transcode_timeout_seconds: Optional[float] = None
    stage_timeout_seconds: Optional[float] = None


@dataclass
class ConversionOutcome:
    status: str
    state: PipelineState
    format: str
    code: Optional[str] = None
    message: Optional[str] = None
    failed_at: Optional[PipelineState] = None
    staged_ref: Optional[str] = None
    record_id: Optional[str] = None
    balance_after: Optional[int] = None
    expires_at: Optional[datetime] = None

    @property
    def delivered(self) -> bool:
        return self.status == OUTCOME_DELIVERED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "state": self.state.value,
            "format": self.format,
            "code": self.code,
            "message": self.message,
            "failed_at": self.failed_at.value if self.failed_at else None,
            "staged_ref": self.staged_ref,
            "record_id": self.record_id,
            "balance_after": self.balance_after,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
        }


@dataclass
class PipelineRun:
    session: ConversionSession
    format: str
    work_dir: Path
    invocation_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    state: PipelineState = PipelineState.PENDING
    record: Optional[ConversionRecord] = None

    def advance(self, state: PipelineState) -> None:
        logger.info(
            "Conversion %s for account %s: %s -> %s",
            self.invocation_id,
            self.session.account_id,
            self.state.value,
            state.value,
        )
        self.state = state


async def _with_deadline(awaitable, timeout: Optional[float], failure: type[TransientFailure]):
    if not timeout:
        return await awaitable
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout)
    except asyncio.TimeoutError as exc:
        raise failure(f"Timed out after {timeout} seconds.") from exc


class ConversionPipeline:
    def __init__(
        self,
        session_maker: async_sessionmaker,
        *,
        credits: CreditService,
        accounts: AccountService,
        usage: DailyUsageCounter,
        media_source,
        transcoder,
        remote_store,
        policy: PipelinePolicy,
        work_dir: str,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self._session_maker = session_maker
        self.credits = credits
        self.accounts = accounts
        self.usage = usage
        self.media_source = media_source
        self.transcoder = transcoder
        self.remote_store = remote_store
        self.policy = policy
        self.work_root = Path(work_dir)
        self._clock = clock

    async def validate(self, account_id: str, byte_size: int) -> None:
        """Raise the first policy rejection that applies; never mutates state."""
        balance = await self.credits.read(account_id)
        if balance < self.policy.cost_per_conversion:
            raise InsufficientCredits()
        if await self.usage.limit_reached(account_id):
            raise DailyLimitReached(
                f"You've reached the daily limit of {self.usage.daily_limit} conversions. "
                "Please try again tomorrow."
            )
        if int(byte_size or 0) > self.policy.max_file_size_bytes:
            raise FileTooLarge(
                f"File too large. Maximum file size is {format_file_size(self.policy.max_file_size_bytes)}."
            )

    async def run(self, session: ConversionSession, fmt: str) -> ConversionOutcome:
        run = PipelineRun(session=session, format=fmt, work_dir=self.work_root / uuid.uuid4().hex)
        try:
            profile = build_profile(session.media_kind, fmt)
            await self.validate(session.account_id, session.byte_size)
            run.advance(PipelineState.VALIDATED)

            input_path = await self._download(run)
            run.advance(PipelineState.DOWNLOADED)

            output_path = await self._transcode(run, input_path, profile)
            run.advance(PipelineState.TRANSCODED)

            record = await self._stage(run, output_path)
            run.record = record
            run.advance(PipelineState.STAGED)

            balance = await self._settle(run)
            run.advance(PipelineState.SETTLED)

            run.advance(PipelineState.DELIVERED)
            return ConversionOutcome(
                status=OUTCOME_DELIVERED,
                state=PipelineState.DELIVERED,
                format=fmt,
                message=f"Converted to {fmt}. Remaining credits: {balance}",
                staged_ref=record.staged_ref,
                record_id=record.id,
                balance_after=balance,
                expires_at=record.expires_at,
            )
        except PolicyRejection as exc:
            logger.info(
                "Conversion %s for account %s rejected at %s: %s",
                run.invocation_id,
                session.account_id,
                run.state.value,
                exc.code,
            )
            return self._terminal(run, OUTCOME_REJECTED, exc.code, exc.message)
        except TransientFailure as exc:
            logger.exception(
                "Conversion %s for account %s failed after %s: %s",
                run.invocation_id,
                session.account_id,
                run.state.value,
                exc,
            )
            return self._terminal(run, OUTCOME_FAILED, exc.code, GENERIC_RETRY_MESSAGE)
        except InvariantViolation:
            logger.error(
                "Invariant violated during conversion %s for account %s at %s",
                run.invocation_id,
                session.account_id,
                run.state.value,
            )
            raise
        finally:
            self._release(run)

    def _terminal(self, run: PipelineRun, status: str, code: str, message: str) -> ConversionOutcome:
        failed_at = run.state
        run.advance(PipelineState.FAILED)
        return ConversionOutcome(
            status=status,
            state=PipelineState.FAILED,
            format=run.format,
            code=code,
            message=message,
            failed_at=failed_at,
            record_id=run.record.id if run.record else None,
        )

    async def _download(self, run: PipelineRun) -> Path:
        run.work_dir.mkdir(parents=True, exist_ok=True)
        destination = run.work_dir / f"source_{run.invocation_id}"
        try:
            return await _with_deadline(
                self.media_source.fetch(run.session.source_ref, destination),
                self.policy.download_timeout_seconds,
                DownloadFailed,
            )
        except (TransientFailure, PolicyRejection):
            raise
        except Exception as exc:
            raise DownloadFailed(str(exc)) from exc

    async def _transcode(self, run: PipelineRun, input_path: Path, profile: TranscodeProfile) -> Path:
        output_path = output_path_for(input_path, profile, run.work_dir)
        try:
            return await _with_deadline(
                self.transcoder.transcode(input_path, profile, output_path),
                self.policy.transcode_timeout_seconds,
                TranscodeFailed,
            )
        except TransientFailure:
            output_path.unlink(missing_ok=True)
            raise
        except Exception as exc:
            output_path.unlink(missing_ok=True)
            raise TranscodeFailed(str(exc)) from exc

    async def _stage(self, run: PipelineRun, output_path: Path) -> ConversionRecord:
        caption = f"Converted by user {run.session.account_id} | Format: {run.format}"
        try:
            staged_ref = await _with_deadline(
                self.remote_store.put(output_path, caption=caption),
                self.policy.stage_timeout_seconds,
                StageFailed,
            )
        except TransientFailure:
            raise
        except Exception as exc:
            raise StageFailed(str(exc)) from exc

        # The sweep only finds artifacts through their record.
        now = self._clock()
        record = ConversionRecord(
            id=str(uuid.uuid4()),
            account_id=run.session.account_id,
            source_ref=run.session.source_ref,
            staged_ref=staged_ref,
            format=run.format,
            media_kind=run.session.media_kind,
            byte_size=output_path.stat().st_size,
            created_at=now,
            expires_at=now + self.policy.retention,
        )
        try:
            async with self._session_maker() as db:
                db.add(record)
                await db.commit()
        except Exception as exc:
            logger.exception("Could not record staged artifact %s; removing it", staged_ref)
            try:
                await self.remote_store.delete(staged_ref)
            except Exception:
                logger.warning("Orphaned staged artifact %s could not be removed", staged_ref)
            raise StageFailed(str(exc)) from exc
        return record

    async def _settle(self, run: PipelineRun) -> int:
        account_id = run.session.account_id
        async with self._session_maker() as db:
            try:
                balance = await apply_credit_delta(
                    db,
                    account_id,
                    -self.policy.cost_per_conversion,
                    entry_type="debit",
                    reason=f"Conversion to {run.format}",
                    reference_type="conversion_record",
                    reference_id=run.record.id,
                )
                await self.accounts.record_usage(db, account_id)
                record = await db.get(ConversionRecord, run.record.id)
                if record is not None:
                    record.settled_at = self._clock()
                await db.commit()
            except Exception:
                # The staged record stands and expires through the normal sweep.
                await db.rollback()
                raise
        return balance

    def _release(self, run: PipelineRun) -> None:
        if not run.work_dir.exists():
            return
        try:
            shutil.rmtree(run.work_dir)
        except OSError:
            logger.warning("Could not cleanup transient work dir %s", run.work_dir)
