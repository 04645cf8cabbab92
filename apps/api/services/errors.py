"""Typed failures raised by the converter services.

Three families matter to callers:

* ``PolicyRejection``: expected, user-facing and non-retryable until the user
  changes something. Raised before any state is mutated.
* ``TransientFailure``: infrastructure faults in download, transcode or stage.
  The cause is logged, the user sees a generic "try again later".
* ``InvariantViolation``: a reachable bug or a missing entity on an
  administrative path. Logged loudly, never swallowed.
"""

from __future__ import annotations

from typing import Optional


GENERIC_RETRY_MESSAGE = "Conversion failed. Please try again later."


class ConverterError(Exception):
    """Base class for all converter failures."""

    code = "converter_error"
    status_code = 500
    default_message = "An error occurred while processing your request."

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.default_message
        super().__init__(self.message)

    def to_detail(self) -> dict:
        return {"code": self.code, "message": self.message}


class PolicyRejection(ConverterError):
    code = "policy_rejection"
    status_code = 400


class InsufficientCredits(PolicyRejection):
    code = "insufficient_credits"
    status_code = 402
    default_message = (
        "You don't have enough credits for conversion. "
        "Ask for a top-up or invite friends to earn free credits."
    )


class DailyLimitReached(PolicyRejection):
    code = "daily_limit_reached"
    status_code = 429
    default_message = "You've reached the daily conversion limit. Please try again tomorrow."


class FileTooLarge(PolicyRejection):
    code = "file_too_large"
    status_code = 413
    default_message = "File too large. Please upload a smaller file."


class SessionNotFound(PolicyRejection):
    code = "session_not_found"
    status_code = 410
    default_message = "Session expired. Please upload your file again."


class UnsupportedMediaType(PolicyRejection):
    code = "unsupported_media_type"
    status_code = 415
    default_message = "Unsupported file type. Please upload a video or audio file."


class UnsupportedFormat(PolicyRejection):
    code = "unsupported_format"
    status_code = 422
    default_message = "That format is not available for this file."


class TransientFailure(ConverterError):
    code = "transient_failure"
    status_code = 503
    default_message = GENERIC_RETRY_MESSAGE


class DownloadFailed(TransientFailure):
    code = "download_failed"


class TranscodeFailed(TransientFailure):
    code = "transcode_failed"


class StageFailed(TransientFailure):
    code = "stage_failed"


class InvariantViolation(ConverterError):
    code = "invariant_violation"
    status_code = 500


class AccountNotFound(InvariantViolation):
    code = "account_not_found"
    status_code = 404
    default_message = "Account not found."

    def __init__(self, account_id: str, message: Optional[str] = None):
        self.account_id = account_id
        super().__init__(message or f"Account {account_id} not found.")
