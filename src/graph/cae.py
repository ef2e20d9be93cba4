"""Entra Graph Samples — Continuous Access Evaluation (CAE) aware Graph calls.

Wraps a single Microsoft Graph call.  When Graph rejects the call with a CAE
claims challenge, the challenge is handed to a :class:`ChallengeHandler`
(which typically redirects the user back to Entra ID) and the call yields a
*challenged* :class:`GraphOutcome` instead of raising.  The call itself is
never retried here; the user retries after re-authenticating.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from typing import Any, Generic, Protocol, TypeVar

import structlog
from kiota_abstractions.api_error import APIError

from src.graph.claims import get_claim_challenge_from_headers
from src.middleware.tracing import record_cae_challenge

logger = structlog.get_logger(__name__)

T = TypeVar("T")

CAE_CLAIMS_CHALLENGE_MESSAGE = "Continuous access evaluation resulted in claims challenge"


# ── Outcome ────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class GraphOutcome(Generic[T]):
    """Result of a Graph operation that may have been diverted.

    Attributes:
        value: The operation's result; ``None`` when challenged or failed.
        error: The service error that aborted the operation, if any.
        challenged: True when a re-authentication challenge was triggered.
        claims: The claims challenge handed to the challenge handler.
    """

    value: T | None = None
    error: BaseException | None = None
    challenged: bool = False
    claims: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None and not self.challenged

    @classmethod
    def success(cls, value: T | None) -> GraphOutcome[T]:
        return cls(value=value)

    @classmethod
    def challenge(cls, claims: str | None) -> GraphOutcome[T]:
        return cls(challenged=True, claims=claims)

    @classmethod
    def failure(cls, error: BaseException) -> GraphOutcome[T]:
        return cls(error=error)


class ChallengeHandler(Protocol):
    """Out-of-band re-authentication, e.g. a redirect to Entra ID."""

    def challenge_user(self, scopes: Sequence[str], claims: str) -> Any: ...

    def handle_exception(self, exc: BaseException) -> Any: ...


# ── Error inspection ───────────────────────────────────────────────────────


def error_message(exc: BaseException) -> str:
    """Best-effort message of a Graph service error.

    ``ODataError`` keeps the service message under ``error.message``; the
    base ``APIError`` carries it as ``message``.
    """
    main_error = getattr(exc, "error", None)
    message = getattr(main_error, "message", None) if main_error is not None else None
    if not message:
        message = getattr(exc, "message", None)
    return message or str(exc)


def error_code(exc: BaseException) -> str:
    main_error = getattr(exc, "error", None)
    return (getattr(main_error, "code", None) if main_error is not None else None) or ""


def is_claims_challenge(exc: BaseException) -> bool:
    return isinstance(exc, APIError) and CAE_CLAIMS_CHALLENGE_MESSAGE in error_message(exc)


# ── Wrapper ────────────────────────────────────────────────────────────────


class CaeCallWrapper:
    """Runs Graph calls, diverting CAE claims challenges to a handler.

    Args:
        scopes: Graph scopes to request again when challenging the user.
        challenge_handler: Receives the scopes and decoded claims.
    """

    def __init__(self, scopes: Sequence[str], challenge_handler: ChallengeHandler) -> None:
        self.scopes = list(scopes)
        self.challenge_handler = challenge_handler

    async def call(self, operation: Callable[[], Awaitable[T]]) -> GraphOutcome[T]:
        """Await *operation* once.

        Returns a successful outcome with its result, or a challenged outcome
        when Graph answered with a CAE claims challenge.  Every other
        exception propagates unchanged.
        """
        try:
            return GraphOutcome.success(await operation())
        except APIError as exc:
            if not is_claims_challenge(exc):
                raise
            return self._challenge(exc)

    def _challenge(self, exc: APIError) -> GraphOutcome[Any]:
        record_cae_challenge()
        claims: str | None = None
        try:
            claims = get_claim_challenge_from_headers(getattr(exc, "response_headers", None))
            logger.warning("graph.cae.challenge", scopes=self.scopes)
            self.challenge_handler.challenge_user(self.scopes, claims)
        except Exception as secondary:
            logger.error(
                "graph.cae.challenge_failed",
                error=str(secondary),
                error_type=type(secondary).__name__,
            )
            self.challenge_handler.handle_exception(secondary)
        return GraphOutcome.challenge(claims)
