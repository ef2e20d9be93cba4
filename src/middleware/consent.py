"""Entra Graph Samples — Consent and conditional-access challenge handling.

A :class:`ConsentHandler` is created per request and handed to the
:class:`~src.graph.cae.CaeCallWrapper`.  When Graph answers with a claims
challenge, the handler builds the Entra ID authorize URL that asks the user
to satisfy the extra claims.  The route then turns the pending redirect into
a ``RedirectResponse`` (browser) or a 401 with a ``WWW-Authenticate``
challenge (API clients).
"""

from __future__ import annotations

import base64
from collections.abc import Sequence

import structlog

from src.middleware.auth import build_auth_url

logger = structlog.get_logger(__name__)


class ConsentHandler:
    """Records the re-authentication a Graph call asked for.

    Args:
        redirect_uri: Callback URL registered for the app (``/auth/callback``).
        login_path: Fallback page when the challenge itself could not be built.
    """

    def __init__(self, redirect_uri: str, login_path: str = "/auth/login") -> None:
        self.redirect_uri = redirect_uri
        self.login_path = login_path
        self.pending_redirect: str | None = None
        self.claims: str | None = None
        self.scopes: list[str] = []
        self.error: BaseException | None = None

    @property
    def is_pending(self) -> bool:
        return self.pending_redirect is not None

    @property
    def redirect_url(self) -> str:
        """Where to send the user; the login page when nothing is pending."""
        return self.pending_redirect if self.is_pending else self.login_path

    def challenge_user(self, scopes: Sequence[str], claims: str) -> None:
        """Prepare an authorize redirect carrying *claims* for *scopes*."""
        self.scopes = list(scopes)
        self.claims = claims
        self.pending_redirect = build_auth_url(
            redirect_uri=self.redirect_uri,
            scopes=self.scopes,
            claims=claims,
        )
        logger.info("auth.consent.challenge_prepared", scopes=self.scopes)

    def handle_exception(self, exc: BaseException) -> None:
        """Fall back to a plain sign-in when the challenge could not be built."""
        self.error = exc
        self.pending_redirect = self.login_path
        logger.warning(
            "auth.consent.challenge_error",
            error=str(exc),
            error_type=type(exc).__name__,
        )

    def www_authenticate(self) -> str:
        """``WWW-Authenticate`` value telling API clients which claims to add."""
        if not self.claims:
            return 'Bearer error="invalid_token"'
        encoded = base64.b64encode(self.claims.encode("utf-8")).decode("ascii")
        return f'Bearer error="insufficient_claims", claims="{encoded}"'
