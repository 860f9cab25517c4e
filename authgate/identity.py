"""
authgate/identity.py

Identity resolution: verified email -> profile + capability labels.

The member directory is external. Two directories are provided:

- GhostMemberDirectory: the Ghost Admin API (production).
  Auth is a short-lived HS256 JWT minted from the Admin API key
  ("<key_id>:<hex_secret>"), sent as `Authorization: Ghost <token>`.

- FileMemberDirectory: a local JSON file (development / small deployments).

  File format:
     {
       "members": [
         {"email": "a@x.com", "name": "A", "labels": ["builder"]}
       ]
     }

  Legacy map format is also accepted:
     {"a@x.com": {"name": "A", "labels": ["builder"]}}

Labels may be plain strings or Ghost-style objects ({"name": "builder"});
both normalize to the label name.
"""

import json
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol

import httpx
import jwt
from loguru import logger

from .errors import NotFoundError, UpstreamError
from .models import normalize_email


class DirectoryError(UpstreamError):
    status_code = 500
    default_error = "Member directory unavailable"


@dataclass
class Member:
    email: str
    name: str
    labels: List[str] = field(default_factory=list)


@dataclass
class Identity:
    email: str
    name: str
    labels: List[str] = field(default_factory=list)


class MemberDirectory(Protocol):
    async def get_member_by_email(self, email: str) -> Optional[Member]: ...


def _label_names(raw: Any) -> List[str]:
    out: List[str] = []
    for item in raw or []:
        if isinstance(item, dict):
            name = item.get("name")
        else:
            name = item
        if isinstance(name, str) and name.strip():
            out.append(name.strip())
    return out


def _member_from_json(email: str, entry: Dict[str, Any]) -> Member:
    email = str(entry.get("email") or email)
    return Member(
        email=email,
        name=str(entry.get("name") or email),
        labels=_label_names(entry.get("labels")),
    )


# -----------------------------------------------------------------------------
# Ghost Admin API
# -----------------------------------------------------------------------------
def ghost_admin_token(admin_api_key: str, now: Optional[int] = None) -> str:
    """
    Mint a Ghost Admin API token.

    Ghost requires:
      - header kid = key id
      - aud = "/admin/"
      - exp no more than 5 minutes after iat
      - signature over the hex-decoded secret
    """
    try:
        key_id, secret = admin_api_key.split(":", 1)
        secret_bytes = bytes.fromhex(secret)
    except ValueError as e:
        raise ValueError("GHOST_ADMIN_API_KEY must look like '<id>:<hex secret>'") from e

    iat = int(now if now is not None else time.time())
    return jwt.encode(
        {"iat": iat, "exp": iat + 5 * 60, "aud": "/admin/"},
        secret_bytes,
        algorithm="HS256",
        headers={"kid": key_id},
    )


def _nql_quote(value: str) -> str:
    return "'" + value.replace("\\", "\\\\").replace("'", "\\'") + "'"


class GhostMemberDirectory:
    def __init__(self, admin_url: str, admin_api_key: str, client: Optional[httpx.AsyncClient] = None, timeout: float = 10.0):
        if not admin_url or not admin_api_key:
            raise ValueError("GhostMemberDirectory needs GHOST_ADMIN_URL and GHOST_ADMIN_API_KEY")
        self.admin_url = admin_url.rstrip("/")
        self.admin_api_key = admin_api_key
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def close(self) -> None:
        await self._client.aclose()

    async def get_member_by_email(self, email: str) -> Optional[Member]:
        url = f"{self.admin_url}/ghost/api/admin/members/"
        headers = {
            "Authorization": f"Ghost {ghost_admin_token(self.admin_api_key)}",
            "Accept-Version": "v5.0",
        }
        try:
            resp = await self._client.get(url, params={"filter": f"email:{_nql_quote(email)}"}, headers=headers)
            resp.raise_for_status()
            members = resp.json().get("members") or []
        except (httpx.HTTPError, ValueError) as e:
            raise DirectoryError(message_debug=str(e)[:200], cause=e) from e

        for entry in members:
            if isinstance(entry, dict) and str(entry.get("email", "")).lower() == email.lower():
                return _member_from_json(email, entry)
        return None


# -----------------------------------------------------------------------------
# Local file directory
# -----------------------------------------------------------------------------
class FileMemberDirectory:
    def __init__(self, path: str | Path):
        self.path = Path(path)

    def _load_raw(self) -> Dict[str, Any]:
        """
        Load the members file as a dict.

        Returns {} if file does not exist or is invalid JSON. Re-read on every
        lookup so edits apply without a restart.
        """
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.warning(f"members file unreadable: {e}")
            return {}
        return data if isinstance(data, dict) else {}

    def load_members(self) -> Dict[str, Member]:
        data = self._load_raw()
        out: Dict[str, Member] = {}

        members = data.get("members")
        if isinstance(members, list):
            for entry in members:
                if isinstance(entry, dict) and entry.get("email"):
                    m = _member_from_json(entry["email"], entry)
                    out[m.email.lower()] = m
            return out

        # legacy map: email -> entry
        for email, entry in data.items():
            if isinstance(email, str) and isinstance(entry, dict):
                out[email.lower()] = _member_from_json(email, entry)
        return out

    async def get_member_by_email(self, email: str) -> Optional[Member]:
        return self.load_members().get(email.lower())


# -----------------------------------------------------------------------------
# Resolver
# -----------------------------------------------------------------------------
class IdentityResolver:
    def __init__(self, directory: MemberDirectory, membership_url: str):
        self.directory = directory
        self.membership_url = membership_url

    async def lookup(self, email: str) -> Optional[Identity]:
        member = await self.directory.get_member_by_email(email)
        if member is None:
            return None
        # directories keep the stored case; sessions and passkeys are keyed by the normalized form
        return Identity(email=normalize_email(member.email), name=member.name, labels=list(member.labels))

    async def resolve(self, email: str) -> Identity:
        identity = await self.lookup(email)
        if identity is None:
            raise NotFoundError(
                message_safe="Please sign up for a membership first.",
                redirect_url=self.membership_url,
            )
        return identity
