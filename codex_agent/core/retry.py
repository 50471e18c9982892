"""
Provider retry layer — error classification plus the retry/backoff policy.

``classify_provider_error`` maps any exception raised while opening a provider
stream onto an ``ErrorClassification`` without importing a provider SDK: it
reads the attributes SDK errors expose (``status_code``, ``code``, ``type``,
``param``, ``request_id``), the exception class names along the MRO and the
nested ``__cause__`` chain.

``RetryCoordinator.execute`` applies the policy:

- Timeout / ServerError / ConnectionError: retried with the same payload.
- RateLimit: exponential backoff ``base * 2^(attempt-1)``, replaced by a
  "try again in N s" hint from the error message when present.
- TokenLimit / InsufficientQuota / ClientError / InvalidRequest: not retried;
  the result carries a user-facing ``terminal_message``.
- Anything else propagates to the caller.
"""

from __future__ import annotations

import asyncio
import errno
import logging
import re
import socket
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional

import httpx

from .cancellation import AbortSignal
from .errors import NetworkError, PrematureCloseError, ProviderTerminalError, ProviderTransientError

logger = logging.getLogger(__name__)


# ── Classification ──────────────────────────────────────────────────

class ErrorClassification(Enum):
    TIMEOUT = "timeout"
    CONNECTION = "connection"
    SERVER = "server"
    RATE_LIMIT = "rate_limit"
    TOKEN_LIMIT = "token_limit"
    INSUFFICIENT_QUOTA = "insufficient_quota"
    CLIENT = "client"
    PREMATURE_CLOSE = "premature_close"
    NETWORK = "network"
    INVALID_REQUEST = "invalid_request"
    UNKNOWN = "unknown"

    @property
    def retryable(self) -> bool:
        return self in (
            ErrorClassification.TIMEOUT,
            ErrorClassification.CONNECTION,
            ErrorClassification.SERVER,
            ErrorClassification.RATE_LIMIT,
        )

    @property
    def terminal(self) -> bool:
        """Ends the turn with a message instead of raising."""
        return self in (
            ErrorClassification.TOKEN_LIMIT,
            ErrorClassification.INSUFFICIENT_QUOTA,
            ErrorClassification.CLIENT,
            ErrorClassification.INVALID_REQUEST,
        )

    @property
    def connectivity(self) -> bool:
        """Surfaced at the turn level as a network notice."""
        return self in (
            ErrorClassification.TIMEOUT,
            ErrorClassification.CONNECTION,
            ErrorClassification.SERVER,
            ErrorClassification.NETWORK,
        )


NETWORK_ERRNOS = frozenset({
    "ECONNRESET", "ECONNREFUSED", "EPIPE", "ENOTFOUND", "ETIMEDOUT", "EAI_AGAIN",
})
_NETWORK_ERRNO_NUMBERS = frozenset({
    errno.ECONNRESET, errno.ECONNREFUSED, errno.EPIPE, errno.ETIMEDOUT,
})
_GAI_ERRNOS = frozenset({socket.EAI_AGAIN, socket.EAI_NONAME})

_TIMEOUT_CLASS_NAMES = frozenset({"APITimeoutError"})
_CONNECTION_CLASS_NAMES = frozenset({"APIConnectionError"})
_PREMATURE_CLASS_NAMES = frozenset({"RemoteProtocolError"})

_RATE_LIMIT_RE = re.compile(r"rate limit", re.IGNORECASE)
_TOKEN_LIMIT_RE = re.compile(r"max_tokens is too large", re.IGNORECASE)
_RETRY_HINT_RE = re.compile(r"(?:retry|try) again in ([\d.]+)s", re.IGNORECASE)


@dataclass
class ErrorDetails:
    status: Optional[int] = None
    code: Optional[str] = None
    type: Optional[str] = None
    param: Optional[str] = None
    message: str = ""
    request_id: Optional[str] = None


def _class_names(exc: BaseException) -> set[str]:
    return {cls.__name__ for cls in type(exc).__mro__}


def _status_of(exc: BaseException) -> Optional[int]:
    for attr in ("status", "status_code", "http_status"):
        value = getattr(exc, attr, None)
        if isinstance(value, int) and not isinstance(value, bool):
            return value
    response = getattr(exc, "response", None)
    value = getattr(response, "status_code", None)
    return value if isinstance(value, int) else None


def _str_attr(exc: BaseException, name: str) -> Optional[str]:
    value = getattr(exc, name, None)
    return value if isinstance(value, str) and value else None


def _chain_attr(exc: BaseException, *names: str) -> Optional[str]:
    for err in _cause_chain(exc):
        for name in names:
            value = _str_attr(err, name)
            if value:
                return value
    return None


def _chain_status(exc: BaseException) -> Optional[int]:
    for err in _cause_chain(exc):
        status = _status_of(err)
        if status is not None:
            return status
    return None


def error_details(exc: BaseException) -> ErrorDetails:
    """Attributes of ``exc``; the ones it lacks are taken from its cause chain."""
    return ErrorDetails(
        status=_chain_status(exc),
        code=_chain_attr(exc, "code"),
        type=_chain_attr(exc, "type"),
        param=_chain_attr(exc, "param"),
        message=_str_attr(exc, "message") or str(exc) or _chain_attr(exc, "message") or "",
        request_id=_chain_attr(exc, "request_id", "requestId"),
    )


def _cause_chain(exc: BaseException, limit: int = 5):
    seen = 0
    current: Optional[BaseException] = exc
    while current is not None and seen < limit:
        yield current
        seen += 1
        nxt = getattr(current, "cause", None)
        if not isinstance(nxt, BaseException):
            nxt = current.__cause__
        current = nxt


def is_network_errno(exc: BaseException) -> bool:
    """True if ``exc`` (or anything in its cause chain) carries a network errno."""
    for err in _cause_chain(exc):
        if isinstance(err, NetworkError):
            return True
        code = getattr(err, "code", None)
        if isinstance(code, str) and code in NETWORK_ERRNOS:
            return True
        number = getattr(err, "errno", None)
        if isinstance(err, socket.gaierror) and number in _GAI_ERRNOS:
            return True
        if isinstance(err, OSError) and number in _NETWORK_ERRNO_NUMBERS:
            return True
    return False


def is_token_limit(details: ErrorDetails) -> bool:
    if details.code == "context_length_exceeded":
        return True
    return details.type == "invalid_request_error" and (
        details.param == "max_tokens" or bool(_TOKEN_LIMIT_RE.search(details.message))
    )


def classify_provider_error(exc: BaseException) -> ErrorClassification:
    names = _class_names(exc)
    details = error_details(exc)

    if isinstance(exc, PrematureCloseError) or names & _PREMATURE_CLASS_NAMES \
            or "premature close" in details.message.lower():
        return ErrorClassification.PREMATURE_CLOSE
    if isinstance(exc, (asyncio.TimeoutError, httpx.TimeoutException)) or names & _TIMEOUT_CLASS_NAMES:
        return ErrorClassification.TIMEOUT
    if isinstance(exc, httpx.ConnectError) or names & _CONNECTION_CLASS_NAMES:
        return ErrorClassification.CONNECTION

    status = details.status
    if status is not None and status >= 500:
        return ErrorClassification.SERVER
    if details.code == "insufficient_quota":
        return ErrorClassification.INSUFFICIENT_QUOTA
    if is_token_limit(details):
        return ErrorClassification.TOKEN_LIMIT
    if status == 429 or details.code == "rate_limit_exceeded" or _RATE_LIMIT_RE.search(details.message):
        return ErrorClassification.RATE_LIMIT
    if status is not None and 400 <= status < 500:
        return ErrorClassification.CLIENT
    if details.type == "invalid_request_error":
        return ErrorClassification.INVALID_REQUEST
    if isinstance(exc, ProviderTerminalError):
        return ErrorClassification.CLIENT
    if isinstance(exc, ProviderTransientError):
        return ErrorClassification.SERVER
    if is_network_errno(exc):
        return ErrorClassification.NETWORK
    return ErrorClassification.UNKNOWN


def parse_retry_hint_ms(message: str) -> Optional[float]:
    """Milliseconds from a "try again in 2.5s" hint, or None."""
    match = _RETRY_HINT_RE.search(message or "")
    if not match:
        return None
    try:
        return float(match.group(1)) * 1000
    except ValueError:
        return None


# ── User-facing messages ────────────────────────────────────────────

TOKEN_LIMIT_MESSAGE = (
    "⚠️  The current request exceeds the maximum context length supported by "
    "the chosen model. Please shorten the conversation, run /clear, or switch "
    "to a model with a larger context window and try again."
)
INSUFFICIENT_QUOTA_MESSAGE = (
    "⚠️  Insufficient quota. Please check your billing details and retry."
)
PREMATURE_CLOSE_MESSAGE = (
    "⚠️  Connection closed prematurely while waiting for the model. Please try again."
)


def _details_text(details: ErrorDetails) -> str:
    return (
        f"Status: {details.status or 'unknown'}, "
        f"Code: {details.code or 'unknown'}, "
        f"Type: {details.type or 'unknown'}, "
        f"Message: {details.message or 'unknown'}"
    )


def network_message(provider_name: str) -> str:
    return (
        f"⚠️  Network error while contacting {provider_name}. "
        f"Please check your connection and try again."
    )


def terminal_message(
    classification: ErrorClassification,
    details: ErrorDetails,
    provider_name: str = "OpenAI",
) -> str:
    if classification is ErrorClassification.TOKEN_LIMIT:
        return TOKEN_LIMIT_MESSAGE
    if classification is ErrorClassification.INSUFFICIENT_QUOTA:
        return INSUFFICIENT_QUOTA_MESSAGE
    if classification is ErrorClassification.RATE_LIMIT:
        return (
            f"⚠️  Rate limit reached. Error details: {_details_text(details)}. "
            f"Please try again later."
        )
    if classification is ErrorClassification.PREMATURE_CLOSE:
        return PREMATURE_CLOSE_MESSAGE
    if classification.connectivity:
        return network_message(provider_name)
    request = f" (request ID: {details.request_id})" if details.request_id else ""
    return (
        f"⚠️  {provider_name} rejected the request{request}. "
        f"Error details: {_details_text(details)}. "
        f"Please verify your settings and try again."
    )


# ── Policy & Result dataclasses ─────────────────────────────────────

@dataclass
class RetryPolicy:
    """Configuration for provider retries."""
    max_attempts: int = 5
    rate_limit_base_ms: float = 2500.0
    backoff_multiplier: float = 2.0
    transient_delay: float = 0.0  # seconds between timeout/5xx/connection retries


@dataclass
class RetryResult:
    """Outcome of a retry-wrapped request."""
    success: bool
    result: Any = None
    attempts: int = 0
    total_delay: float = 0.0
    last_error: Optional[BaseException] = None
    classification: Optional[ErrorClassification] = None
    terminal_message: Optional[str] = None
    aborted: bool = False
    errors: list = field(default_factory=list)


# ── RetryCoordinator ────────────────────────────────────────────────

class RetryCoordinator:
    """Execute a provider request under the classification-driven retry policy."""

    def __init__(
        self,
        policy: Optional[RetryPolicy] = None,
        provider_name: str = "OpenAI",
        sleep: Optional[Callable[[float], Any]] = None,
    ):
        self._policy = policy or RetryPolicy()
        self._provider_name = provider_name
        self._sleep = sleep

    @property
    def policy(self) -> RetryPolicy:
        return self._policy

    @property
    def provider_name(self) -> str:
        return self._provider_name

    def rate_limit_delay(self, attempt: int, error: Optional[BaseException] = None) -> float:
        """Seconds to wait before retrying attempt ``attempt + 1`` after a 429."""
        hint_ms = parse_retry_hint_ms(error_details(error).message) if error else None
        if hint_ms is not None:
            return hint_ms / 1000
        policy = self._policy
        return policy.rate_limit_base_ms * (policy.backoff_multiplier ** (attempt - 1)) / 1000

    async def _wait(self, delay: float, abort_signal: Optional[AbortSignal]) -> bool:
        """Sleep ``delay`` seconds. Returns False if aborted meanwhile."""
        if delay <= 0:
            return not (abort_signal and abort_signal.aborted)
        if self._sleep is not None:
            await self._sleep(delay)
            return not (abort_signal and abort_signal.aborted)
        if abort_signal is None:
            await asyncio.sleep(delay)
            return True
        return not await abort_signal.wait(timeout=delay)

    async def execute(
        self,
        fn: Callable,
        *args: Any,
        abort_signal: Optional[AbortSignal] = None,
        **kwargs: Any,
    ) -> RetryResult:
        """
        Call *fn* up to ``max_attempts`` times.

        Returns a ``RetryResult``; raises only for classifications that are
        neither retryable nor terminal.
        """
        policy = self._policy
        errors: list[BaseException] = []
        total_delay = 0.0

        for attempt in range(1, policy.max_attempts + 1):
            try:
                result = await fn(*args, **kwargs)
                return RetryResult(success=True, result=result, attempts=attempt,
                                   total_delay=total_delay, errors=errors)
            except Exception as exc:
                errors.append(exc)
                classification = classify_provider_error(exc)
                details = error_details(exc)

                if classification.terminal:
                    logger.warning(f"Provider request failed ({classification.value}): {details.message}")
                    return RetryResult(
                        success=False, attempts=attempt, total_delay=total_delay,
                        last_error=exc, classification=classification, errors=errors,
                        terminal_message=terminal_message(classification, details, self._provider_name),
                    )

                if not classification.retryable:
                    raise

                if attempt >= policy.max_attempts:
                    if classification is ErrorClassification.RATE_LIMIT:
                        return RetryResult(
                            success=False, attempts=attempt, total_delay=total_delay,
                            last_error=exc, classification=classification, errors=errors,
                            terminal_message=terminal_message(classification, details, self._provider_name),
                        )
                    raise

                if classification is ErrorClassification.RATE_LIMIT:
                    delay = self.rate_limit_delay(attempt, exc)
                else:
                    delay = policy.transient_delay
                total_delay += delay
                logger.info(
                    "Retry %d/%d after %.2fs: %s (%s)",
                    attempt, policy.max_attempts, delay, details.message, classification.value,
                )
                if not await self._wait(delay, abort_signal):
                    return RetryResult(success=False, attempts=attempt, total_delay=total_delay,
                                       last_error=exc, classification=classification,
                                       aborted=True, errors=errors)

        # unreachable: the last attempt either returns or raises
        raise RuntimeError("retry loop exited without a result")
