"""Tests for CAE-aware Graph calls and claims challenge extraction."""

from __future__ import annotations

import base64
import json
from types import SimpleNamespace
from typing import Any
from unittest.mock import AsyncMock

import pytest
from kiota_abstractions.api_error import APIError

from src.graph.cae import (
    CAE_CLAIMS_CHALLENGE_MESSAGE,
    CaeCallWrapper,
    GraphOutcome,
    error_code,
    error_message,
    is_claims_challenge,
)
from src.graph.claims import (
    ClaimsChallengeError,
    get_claim_challenge_from_headers,
    parse_www_authenticate,
)

SCOPES = ["User.Read", "Group.Read.All"]
CLAIMS_JSON = json.dumps({"access_token": {"nbf": {"essential": True, "value": "1700000000"}}})
CLAIMS_B64 = base64.b64encode(CLAIMS_JSON.encode()).decode()
CHALLENGE_HEADER = (
    'Bearer realm="", authorization_uri="https://login.microsoftonline.com/common/oauth2/authorize", '
    f'client_id="00000003-0000-0000-c000-000000000000", error="insufficient_claims", claims="{CLAIMS_B64}"'
)


class RecordingHandler:
    """Challenge handler that records every call it receives."""

    def __init__(self, fail_on_challenge: bool = False) -> None:
        self.challenges: list[tuple[list[str], str]] = []
        self.exceptions: list[BaseException] = []
        self.fail_on_challenge = fail_on_challenge

    def challenge_user(self, scopes: Any, claims: str) -> None:
        self.challenges.append((list(scopes), claims))
        if self.fail_on_challenge:
            raise RuntimeError("redirect could not be built")

    def handle_exception(self, exc: BaseException) -> None:
        self.exceptions.append(exc)


def _cae_error(headers: dict[str, str] | None = None) -> APIError:
    return APIError(
        message=f"{CAE_CLAIMS_CHALLENGE_MESSAGE}.",
        response_status_code=401,
        response_headers=headers if headers is not None else {"WWW-Authenticate": CHALLENGE_HEADER},
    )


# ═══════════════════════════════════════════════════════════════════════
# 1. GraphOutcome
# ═══════════════════════════════════════════════════════════════════════


class TestGraphOutcome:
    def test_success(self):
        outcome = GraphOutcome.success([1, 2])
        assert outcome.ok
        assert outcome.value == [1, 2]
        assert outcome.challenged is False

    def test_success_with_none_value_is_still_ok(self):
        assert GraphOutcome.success(None).ok

    def test_challenge(self):
        outcome = GraphOutcome.challenge("claims")
        assert not outcome.ok
        assert outcome.challenged
        assert outcome.value is None
        assert outcome.claims == "claims"

    def test_failure(self):
        err = APIError(message="boom", response_status_code=500)
        outcome = GraphOutcome.failure(err)
        assert not outcome.ok
        assert outcome.error is err
        assert outcome.value is None


# ═══════════════════════════════════════════════════════════════════════
# 2. Error inspection
# ═══════════════════════════════════════════════════════════════════════


class TestErrorInspection:
    def test_message_from_api_error(self):
        assert error_message(APIError(message="Forbidden")) == "Forbidden"

    def test_message_from_odata_style_error(self):
        exc = APIError(message=None)
        exc.error = SimpleNamespace(code="InvalidAuthenticationToken", message=CAE_CLAIMS_CHALLENGE_MESSAGE)
        assert error_message(exc) == CAE_CLAIMS_CHALLENGE_MESSAGE
        assert error_code(exc) == "InvalidAuthenticationToken"

    def test_message_falls_back_to_str(self):
        assert error_message(ValueError("plain")) == "plain"

    def test_error_code_missing(self):
        assert error_code(APIError(message="x")) == ""

    def test_is_claims_challenge(self):
        assert is_claims_challenge(_cae_error())
        assert not is_claims_challenge(APIError(message="Insufficient privileges", response_status_code=403))
        assert not is_claims_challenge(RuntimeError(CAE_CLAIMS_CHALLENGE_MESSAGE))


# ═══════════════════════════════════════════════════════════════════════
# 3. CaeCallWrapper
# ═══════════════════════════════════════════════════════════════════════


class TestCaeCallWrapper:
    @pytest.mark.asyncio
    async def test_success_passes_value_through(self):
        handler = RecordingHandler()
        operation = AsyncMock(return_value={"id": "me"})

        outcome = await CaeCallWrapper(SCOPES, handler).call(operation)

        assert outcome.ok
        assert outcome.value == {"id": "me"}
        operation.assert_awaited_once()
        assert handler.challenges == []

    @pytest.mark.asyncio
    async def test_claims_challenge_invokes_handler_once(self):
        handler = RecordingHandler()
        operation = AsyncMock(side_effect=_cae_error())

        outcome = await CaeCallWrapper(SCOPES, handler).call(operation)

        assert outcome.challenged
        assert outcome.value is None
        assert outcome.claims == CLAIMS_JSON
        assert handler.challenges == [(SCOPES, CLAIMS_JSON)]
        assert handler.exceptions == []
        operation.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_challenge_header_lookup_is_case_insensitive(self):
        handler = RecordingHandler()
        operation = AsyncMock(side_effect=_cae_error({"www-authenticate": CHALLENGE_HEADER}))

        outcome = await CaeCallWrapper(SCOPES, handler).call(operation)

        assert outcome.claims == CLAIMS_JSON

    @pytest.mark.asyncio
    async def test_missing_claims_goes_to_exception_handler(self):
        handler = RecordingHandler()
        operation = AsyncMock(side_effect=_cae_error({}))

        outcome = await CaeCallWrapper(SCOPES, handler).call(operation)

        assert outcome.challenged
        assert outcome.claims is None
        assert handler.challenges == []
        assert len(handler.exceptions) == 1
        assert isinstance(handler.exceptions[0], ClaimsChallengeError)

    @pytest.mark.asyncio
    async def test_failing_challenge_goes_to_exception_handler(self):
        handler = RecordingHandler(fail_on_challenge=True)
        operation = AsyncMock(side_effect=_cae_error())

        outcome = await CaeCallWrapper(SCOPES, handler).call(operation)

        assert outcome.challenged
        assert len(handler.challenges) == 1
        assert isinstance(handler.exceptions[0], RuntimeError)

    @pytest.mark.asyncio
    async def test_other_service_errors_propagate(self):
        handler = RecordingHandler()
        err = APIError(message="Insufficient privileges", response_status_code=403)
        operation = AsyncMock(side_effect=err)

        with pytest.raises(APIError) as exc_info:
            await CaeCallWrapper(SCOPES, handler).call(operation)

        assert exc_info.value is err
        assert handler.challenges == []
        assert handler.exceptions == []

    @pytest.mark.asyncio
    async def test_non_graph_errors_propagate(self):
        operation = AsyncMock(side_effect=ConnectionError("network down"))
        with pytest.raises(ConnectionError):
            await CaeCallWrapper(SCOPES, RecordingHandler()).call(operation)

    def test_scopes_are_copied(self):
        scopes = ["User.Read"]
        wrapper = CaeCallWrapper(scopes, RecordingHandler())
        scopes.append("Mail.Read")
        assert wrapper.scopes == ["User.Read"]


# ═══════════════════════════════════════════════════════════════════════
# 4. Claims extraction
# ═══════════════════════════════════════════════════════════════════════


class TestClaimsExtraction:
    def test_parse_bearer_params(self):
        params = parse_www_authenticate(CHALLENGE_HEADER)
        assert params["error"] == "insufficient_claims"
        assert params["realm"] == ""
        assert params["claims"] == CLAIMS_B64

    def test_parse_lowercases_keys(self):
        params = parse_www_authenticate('Bearer Error="insufficient_claims", Claims=abc')
        assert params == {"error": "insufficient_claims", "claims": "abc"}

    def test_parse_non_bearer_scheme(self):
        assert parse_www_authenticate('Basic realm="files"') == {}

    def test_decodes_claims(self):
        headers = {"WWW-Authenticate": CHALLENGE_HEADER}
        assert get_claim_challenge_from_headers(headers) == CLAIMS_JSON

    def test_accepts_list_header_values(self):
        headers = {"WWW-Authenticate": ['Basic realm="x"', CHALLENGE_HEADER]}
        assert get_claim_challenge_from_headers(headers) == CLAIMS_JSON

    def test_tolerates_missing_padding(self):
        unpadded = CLAIMS_B64.rstrip("=")
        headers = {"WWW-Authenticate": f'Bearer error="insufficient_claims", claims="{unpadded}"'}
        assert get_claim_challenge_from_headers(headers) == CLAIMS_JSON

    def test_other_bearer_error_is_ignored(self):
        headers = {"WWW-Authenticate": f'Bearer error="invalid_token", claims="{CLAIMS_B64}"'}
        with pytest.raises(ClaimsChallengeError):
            get_claim_challenge_from_headers(headers)

    @pytest.mark.parametrize("headers", [None, {}, {"Content-Type": "application/json"}])
    def test_no_challenge_header(self, headers):
        with pytest.raises(ClaimsChallengeError):
            get_claim_challenge_from_headers(headers)

    def test_invalid_base64(self):
        headers = {"WWW-Authenticate": 'Bearer error="insufficient_claims", claims="not*base64"'}
        with pytest.raises(ClaimsChallengeError):
            get_claim_challenge_from_headers(headers)
