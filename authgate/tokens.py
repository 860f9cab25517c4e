# authgate/tokens.py
#
# -----------------------------------------------------------------------------
# Architectural notes
# -----------------------------------------------------------------------------
# Two token kinds cross this gateway's boundary:
#
#   1. Session cookies (issued here, read here)
#        v1.<session_id_b64url>.<mac_b64url>
#      mac = HMAC-SHA256(SESSION_SECRET, "v1." + session_id_b64url)
#      The cookie only *references* a server-side record; it carries no claims.
#
#   2. SSO bootstrap tokens (issued by the SSO provider, read here)
#      HS256 JWTs with iss/email/name/labels claims, verified with PyJWT.
#
# What this module is NOT:
#   - Not a session store (sessions.py)
#   - Not a policy engine (policy.py)
# -----------------------------------------------------------------------------

import base64
from dataclasses import dataclass, field
from typing import List

import jwt
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, hmac

TOKEN_VERSION = "v1"


# -----------------------------------------------------------------------------
# Base64 helpers
# -----------------------------------------------------------------------------
def b64url_encode(b: bytes) -> str:
    """URL-safe Base64 WITHOUT padding (cookie-safe, compact)."""
    return base64.urlsafe_b64encode(b).decode("ascii").rstrip("=")


def b64url_decode(s: str) -> bytes:
    """Decode URL-safe Base64 with optional missing padding."""
    s = str(s).strip()
    s += "=" * (-len(s) % 4)
    return base64.urlsafe_b64decode(s.encode("ascii"))


# -----------------------------------------------------------------------------
# Session cookie signing
# -----------------------------------------------------------------------------
class CookieSigner:
    """
    Signs and verifies session-id cookies.

    The version prefix is part of the MAC input, so a token minted under a
    different format can never verify under this one.
    """

    def __init__(self, secret: str):
        if not secret:
            raise ValueError("session secret must not be empty")
        self._key = secret.encode("utf-8")

    def _mac(self, signed_part: bytes) -> bytes:
        h = hmac.HMAC(self._key, hashes.SHA256())
        h.update(signed_part)
        return h.finalize()

    def sign(self, session_id: str) -> str:
        signed_part = f"{TOKEN_VERSION}.{b64url_encode(session_id.encode('utf-8'))}"
        return signed_part + "." + b64url_encode(self._mac(signed_part.encode("ascii")))

    def unsign(self, token: str) -> str:
        """
        Return the session id, or raise ValueError.

        Format checks first, then a constant-time MAC comparison.
        """
        parts = str(token).split(".")
        if len(parts) != 3 or parts[0] != TOKEN_VERSION:
            raise ValueError("bad token format")

        signed_part = f"{parts[0]}.{parts[1]}".encode("ascii")
        try:
            mac = b64url_decode(parts[2])
            h = hmac.HMAC(self._key, hashes.SHA256())
            h.update(signed_part)
            h.verify(mac)
        except (InvalidSignature, ValueError) as e:
            raise ValueError("bad token signature") from e

        return b64url_decode(parts[1]).decode("utf-8")


# -----------------------------------------------------------------------------
# SSO bootstrap tokens
# -----------------------------------------------------------------------------
class IssuerMismatch(Exception):
    pass


@dataclass
class SsoClaims:
    email: str
    name: str
    labels: List[str] = field(default_factory=list)


def decode_sso_token(token: str, secret: str, issuer: str) -> SsoClaims:
    """
    Verify an SSO provider token and extract the identity it vouches for.

    Raises:
      - jwt.InvalidTokenError on bad signature / malformed / expired token
      - IssuerMismatch when the token was minted by someone else
    """
    claims = jwt.decode(token, secret, algorithms=["HS256"], options={"verify_aud": False})

    if claims.get("iss") != issuer:
        raise IssuerMismatch(str(claims.get("iss")))

    email = str(claims.get("email") or "").strip()
    if not email:
        raise jwt.InvalidTokenError("token carries no email")

    labels = claims.get("labels") or []
    if not isinstance(labels, list):
        labels = []

    return SsoClaims(
        email=email,
        name=str(claims.get("name") or email),
        labels=[str(label) for label in labels],
    )
