"""PKCE (Proof Key for Code Exchange) and CSRF ``state`` helpers.

RFC 7636 defines PKCE to protect authorization codes from interception. The
mechanism relies on a *code verifier* (random high-entropy string) generated
at the beginning of the flow and a *code challenge* derived from that verifier
that is sent to the authorization endpoint.

Only the S256 transformation is implemented; Cognito and every other modern
provider accept it.

This module performs **no logging** of verifiers, challenges or states.
"""

from __future__ import annotations

import base64
import secrets
from hashlib import sha256
from typing import Final, NamedTuple

# RFC-7636 §4.1 mandates the verifier length between 43 and 128 characters.
_VERIFIER_LEN: Final[int] = 64
_STATE_BYTES: Final[int] = 32
_ALLOWED_CHARS: Final[str] = (
    "ABCDEFGHIJKLMNOPQRSTUVWXYZ"
    "abcdefghijklmnopqrstuvwxyz"
    "0123456789"
    "-._~"
)


class PKCEPair(NamedTuple):
    verifier: str
    challenge: str


def _random_urlsafe_string(length: int) -> str:
    """Return a cryptographically secure, URL-safe random string."""
    return "".join(secrets.choice(_ALLOWED_CHARS) for _ in range(length))


def generate_code_verifier(length: int = _VERIFIER_LEN) -> str:
    """Generate a high-entropy code verifier.

    Parameters
    ----------
    length:
        Desired length between 43 and 128 characters (default 64).
    """
    if not 43 <= length <= 128:
        raise ValueError("code verifier length must be 43-128 characters")
    return _random_urlsafe_string(length)


def code_challenge_s256(verifier: str) -> str:
    """Compute the *S256* PKCE code challenge for a given verifier.

    Returns
    -------
    str
        Base64url-encoded SHA-256 hash without padding.
    """
    digest = sha256(verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


def generate_pkce_pair() -> PKCEPair:
    verifier = generate_code_verifier()
    return PKCEPair(verifier=verifier, challenge=code_challenge_s256(verifier))


def generate_state() -> str:
    """Return a one-time CSRF ``state`` value (32 random bytes, base64url)."""
    return secrets.token_urlsafe(_STATE_BYTES)
