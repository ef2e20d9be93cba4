"""Entra Graph Samples — Claims challenge extraction.

When Continuous Access Evaluation revokes a token mid-session, Microsoft
Graph answers 401 with a header such as::

    WWW-Authenticate: Bearer realm="", authorization_uri="https://login.microsoftonline.com/common/oauth2/authorize",
        error="insufficient_claims", claims="eyJhY2Nlc3NfdG9rZW4iOnsibmJmIjp7ImVzc2VudGlhbCI6dHJ1ZX19fQ=="

The ``claims`` parameter is base64-encoded JSON that must be sent back to
Entra ID on the next authorize request.
"""

from __future__ import annotations

import base64
import binascii
import re
from collections.abc import Iterable, Mapping
from typing import Any

WWW_AUTHENTICATE = "www-authenticate"
INSUFFICIENT_CLAIMS = "insufficient_claims"

# key="quoted value" or key=bare-token
_PARAM_PATTERN = re.compile(r'([A-Za-z_][\w-]*)\s*=\s*(?:"((?:[^"\\]|\\.)*)"|([^\s,]+))')


class ClaimsChallengeError(Exception):
    """Raised when a response carries no usable claims challenge."""


def parse_www_authenticate(value: str) -> dict[str, str]:
    """Parse the parameters of a ``Bearer`` challenge into a dict.

    Keys are lower-cased.  Returns an empty dict when the value is not a
    Bearer challenge.
    """
    scheme, _, params = value.strip().partition(" ")
    if scheme.lower() != "bearer":
        return {}

    parsed: dict[str, str] = {}
    for match in _PARAM_PATTERN.finditer(params):
        key = match.group(1).lower()
        quoted, bare = match.group(2), match.group(3)
        parsed[key] = quoted.replace('\\"', '"') if quoted is not None else bare
    return parsed


def _header_values(headers: Mapping[str, Any] | None) -> list[str]:
    if not headers:
        return []
    values: list[str] = []
    for key, value in headers.items():
        if str(key).lower() != WWW_AUTHENTICATE:
            continue
        if isinstance(value, str):
            values.append(value)
        elif isinstance(value, Iterable):
            values.extend(str(v) for v in value)
    return values


def _decode_claims(encoded: str) -> str:
    padded = encoded + "=" * (-len(encoded) % 4)
    try:
        return base64.b64decode(padded, validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError) as exc:
        raise ClaimsChallengeError("Claims challenge is not valid base64") from exc


def get_claim_challenge_from_headers(headers: Mapping[str, Any] | None) -> str:
    """Return the decoded claims challenge from Graph response headers.

    Raises:
        ClaimsChallengeError: When no ``insufficient_claims`` Bearer challenge
            with a ``claims`` parameter is present, or it cannot be decoded.
    """
    for header in _header_values(headers):
        params = parse_www_authenticate(header)
        if params.get("error") == INSUFFICIENT_CLAIMS and params.get("claims"):
            return _decode_claims(params["claims"])

    raise ClaimsChallengeError("No claims challenge found in WWW-Authenticate headers")
