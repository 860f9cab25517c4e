"""
Verification mail delivery.

The transport is external; this module only hands a rendered message to it.
Failures surface as DeliveryError and are never retried here.
"""

from pathlib import Path
from typing import Optional, Protocol

import httpx
from jinja2 import Environment, FileSystemLoader, select_autoescape
from loguru import logger

from .errors import DeliveryError

TEMPLATES_DIR = Path(__file__).resolve().parent / "templates"
BREVO_SEND_URL = "https://api.brevo.com/v3/smtp/email"

_env = Environment(loader=FileSystemLoader(str(TEMPLATES_DIR)), autoescape=select_autoescape(["html"]))


class Mailer(Protocol):
    async def send_verification(self, email: str, name: str, code: str) -> None: ...


def render_verification_email(name: str, code: str, app_name: str, ttl_minutes: int) -> str:
    return _env.get_template("verification_email.html").render(
        name=name,
        code=code,
        app_name=app_name,
        ttl_minutes=ttl_minutes,
    )


class BrevoMailer:
    def __init__(
        self,
        api_key: str,
        from_email: str,
        from_name: str,
        app_name: str,
        ttl_minutes: int = 10,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 10.0,
    ):
        self.api_key = api_key
        self.from_email = from_email
        self.from_name = from_name
        self.app_name = app_name
        self.ttl_minutes = ttl_minutes
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def close(self) -> None:
        await self._client.aclose()

    async def send_verification(self, email: str, name: str, code: str) -> None:
        payload = {
            "sender": {"email": self.from_email, "name": self.from_name},
            "to": [{"email": email, "name": name}],
            "subject": f"Your {self.app_name} Verification Code",
            "htmlContent": render_verification_email(name, code, self.app_name, self.ttl_minutes),
        }
        try:
            resp = await self._client.post(
                BREVO_SEND_URL,
                json=payload,
                headers={"api-key": self.api_key, "accept": "application/json"},
            )
            resp.raise_for_status()
        except httpx.HTTPError as e:
            raise DeliveryError(message_debug=str(e)[:200], cause=e) from e


class LogMailer:
    """Development transport: the code goes to the log, nowhere else."""

    async def send_verification(self, email: str, name: str, code: str) -> None:
        logger.warning(f"[dev mailer] verification code for {email}: {code}")
