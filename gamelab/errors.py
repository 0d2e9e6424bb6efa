"""Error taxonomy and classifier.

Every provider or adapter failure is mapped onto a closed set of
machine-readable codes before it leaves the orchestrator. The codes drive
three decisions:

    retry          only ``malformed_ai_response`` (text step), and
                   ``ai_error`` inside the offline translation tool
    actionable     credential problems the user has to fix
                   (``invalid_api_key``, ``billing_not_active``,
                   ``org_verification_required``, ``insufficient_quota``)
    log-and-fail   everything else, surfaced as ``ai_error``
"""

from __future__ import annotations

from enum import Enum


class ErrorCode(str, Enum):
    INVALID_API_KEY = "invalid_api_key"
    ORG_VERIFICATION_REQUIRED = "org_verification_required"
    BILLING_NOT_ACTIVE = "billing_not_active"
    MALFORMED_AI_RESPONSE = "malformed_ai_response"
    AI_ERROR = "ai_error"
    NO_API_KEY_AVAILABLE = "no_api_key_available"

    # Provider conditions kept distinct for client-side messages
    INSUFFICIENT_QUOTA = "insufficient_quota"
    RATE_LIMIT_EXCEEDED = "rate_limit_exceeded"
    CONTENT_FILTERED = "content_filtered"
    PREVIOUS_RESPONSE_NOT_FOUND = "previous_response_not_found"
    INVALID_JSON_SCHEMA = "invalid_json_schema"

    # Engine conditions
    TURN_IN_PROGRESS = "turn_in_progress"
    SESSION_ALREADY_STARTED = "session_already_started"
    NOT_FOUND = "not_found"
    INVALID_PLATFORM = "invalid_platform"
    SPONSORED_API_KEY_NOT_WORKING = "sponsored_api_key_not_working"

    def is_key_related(self) -> bool:
        """True when the key itself is broken and another key may succeed."""
        return self in _KEY_RELATED

    def is_actionable(self) -> bool:
        """True when the user has to fix their credentials."""
        return self in _ACTIONABLE


_KEY_RELATED = frozenset({
    ErrorCode.INVALID_API_KEY,
    ErrorCode.BILLING_NOT_ACTIVE,
    ErrorCode.INSUFFICIENT_QUOTA,
})

_ACTIONABLE = _KEY_RELATED | {ErrorCode.ORG_VERIFICATION_REQUIRED}


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class GameLabError(RuntimeError):
    """Base for every error that may cross the orchestrator boundary."""

    code: ErrorCode = ErrorCode.AI_ERROR
    status_code: int = 500

    def __init__(
        self,
        message: str,
        *,
        code: ErrorCode | None = None,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message)
        if code is not None:
            self.code = code
        if status_code is not None:
            self.status_code = status_code


class AiError(GameLabError):
    """Raised by provider adapters for connection and protocol failures.

    The message keeps the provider's error body so that ``classify`` can
    recognise provider error codes inside it.
    """


class MalformedAiResponse(AiError):
    """The provider answered, but not with the structured JSON we asked for."""

    code = ErrorCode.MALFORMED_AI_RESPONSE


class NoApiKeyAvailable(GameLabError):
    code = ErrorCode.NO_API_KEY_AVAILABLE
    status_code = 400


class TurnInProgress(GameLabError):
    code = ErrorCode.TURN_IN_PROGRESS
    status_code = 409


class SessionAlreadyStarted(GameLabError):
    """The intro turn was submitted for a session that already has a conversation."""

    code = ErrorCode.SESSION_ALREADY_STARTED
    status_code = 409


class NotFound(GameLabError):
    code = ErrorCode.NOT_FOUND
    status_code = 404


class PlatformNotFound(GameLabError):
    code = ErrorCode.INVALID_PLATFORM
    status_code = 400


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------

# Order matters: the first matching keyword wins.
_KEYWORDS: tuple[tuple[tuple[str, ...], ErrorCode], ...] = (
    (("invalid_api_key", "incorrect api key"), ErrorCode.INVALID_API_KEY),
    (("billing_not_active",), ErrorCode.BILLING_NOT_ACTIVE),
    (
        ("organization_verification_required", "organization must be verified", "must be verified"),
        ErrorCode.ORG_VERIFICATION_REQUIRED,
    ),
    (("rate_limit", "rate limit"), ErrorCode.RATE_LIMIT_EXCEEDED),
    (("insufficient_quota", "quota"), ErrorCode.INSUFFICIENT_QUOTA),
    (("content_policy", "content_filter"), ErrorCode.CONTENT_FILTERED),
    (("previous_response_not_found",), ErrorCode.PREVIOUS_RESPONSE_NOT_FOUND),
    (("invalid_json_schema", "invalid schema"), ErrorCode.INVALID_JSON_SCHEMA),
)


def classify(error: BaseException | str | None) -> ErrorCode | None:
    """Map an exception (or raw error text) to an ``ErrorCode``.

    Typed engine errors carry their own code, except plain ``AiError``
    instances whose code is the catch-all: their message is keyword-matched
    against known provider error codes. Returns ``None`` for ``None``.
    """
    if error is None:
        return None
    if isinstance(error, GameLabError) and error.code is not ErrorCode.AI_ERROR:
        return error.code

    text = str(error).lower()
    for keywords, code in _KEYWORDS:
        if any(k in text for k in keywords):
            return code
    return ErrorCode.AI_ERROR


def to_engine_error(error: BaseException) -> GameLabError:
    """Wrap any failure in a ``GameLabError`` carrying its classified code."""
    if isinstance(error, GameLabError):
        code = classify(error)
        if code is not error.code:
            error.code = code
        return error
    return AiError(str(error) or type(error).__name__, code=classify(error))
