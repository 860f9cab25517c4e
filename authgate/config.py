from typing import Annotated
from urllib.parse import urlparse, urlunparse

from pydantic import field_validator
from pydantic_settings import BaseSettings, NoDecode


class Settings(BaseSettings):
    ORIGIN: str = "http://localhost:3002"

    # relying party / display
    RP_ID: str = "localhost"
    RP_NAME: str = "Insights"

    # enforce origin↔rp_id relationship at startup
    STRICT_RP_BINDING: bool = True

    ENVIRONMENT: str = "development"
    HOST: str = "0.0.0.0"
    PORT: int = 3002
    LOG_LEVEL: str = "INFO"

    # labels that grant access to the protected content
    ALLOWED_LABELS: Annotated[list[str], NoDecode] = ["builder", "patron", "buccaneer", "explorer", "insights-subscriber"]

    # where denied / unknown visitors are sent to sign up or upgrade
    MEMBERSHIP_URL: str = "https://travelintelligence.club"

    # sessions
    SESSION_SECRET: str = "insights-secret-change-in-production"
    SESSION_COOKIE_NAME: str = "authgate.sid"
    SESSION_TTL_SECONDS: int = 7 * 24 * 60 * 60

    # verification codes / passkey challenges
    CODE_LENGTH: int = 6
    CODE_TTL_SECONDS: int = 600
    CHALLENGE_TTL_SECONDS: int = 600
    SWEEP_INTERVAL_SECONDS: int = 300

    # empty -> in-memory store (single process only)
    DATABASE_URL: str = ""

    # protected backend
    UPSTREAM_URL: str = "http://127.0.0.1:2368"
    UPSTREAM_TIMEOUT_SECONDS: float = 30.0
    MAX_REWRITE_BYTES: int = 5 * 1024 * 1024

    # cross-domain session sync
    SSO_PROVIDER_URL: str = "http://localhost:3001"
    SSO_TOKEN_ISSUER: str = "bear.flights"
    SSO_TOKEN_SECRET: str = ""
    SSO_LOGIN_REDIRECT: bool = False
    # browser origins allowed to call the API with credentials; empty -> SSO_PROVIDER_URL only
    CORS_ORIGINS: Annotated[list[str], NoDecode] = []

    # member directory (Ghost Admin API)
    GHOST_ADMIN_URL: str = ""
    GHOST_ADMIN_API_KEY: str = ""
    # used when no Ghost admin key is configured
    MEMBERS_FILE: str = "members.json"

    # mail delivery (Brevo); empty key -> codes are only logged
    BREVO_API_KEY: str = ""
    MAIL_FROM_EMAIL: str = "no-reply@localhost"
    MAIL_FROM_NAME: str = "Insights"

    AUDIT_ENABLED: bool = True
    AUDIT_DIR: str = "audit"

    class Config:
        env_file = ".env"

    @field_validator("ORIGIN")
    @classmethod
    def normalize_origin(cls, v: str) -> str:
        """
        ORIGIN must be the absolute http(s) origin browsers use for this gateway.

        Normalization:
          - strip whitespace
          - strip trailing slash
          - require http/https
          - require hostname
          - lowercase hostname

        Note: we preserve an optional port if present.
        """
        v = (v or "").strip().rstrip("/")
        p = urlparse(v)

        if p.scheme not in ("http", "https"):
            raise ValueError("ORIGIN must start with http:// or https://")

        if not p.hostname:
            raise ValueError("ORIGIN must include a hostname")

        netloc = p.hostname.lower()
        if p.port:
            netloc = f"{netloc}:{p.port}"

        return urlunparse((p.scheme, netloc, "", "", "", ""))

    @field_validator("RP_ID")
    @classmethod
    def normalize_rp_id(cls, v: str) -> str:
        """
        RP_ID must be domain-only (WebAuthn rpId semantics).
        Accepts accidental full URLs and strips scheme/path/trailing slashes.
        """
        v = (v or "").strip()

        if "://" in v:
            p = urlparse(v)
            if p.hostname:
                v = p.hostname

        v = v.strip().rstrip("/").lower()

        if not v:
            raise ValueError("RP_ID cannot be empty")

        if "/" in v or ":" in v:
            # ":" would indicate a port; WebAuthn rpId must not include it
            raise ValueError("RP_ID must be a bare domain (no scheme, no port, no path)")

        return v

    @field_validator("RP_NAME")
    @classmethod
    def normalize_rp_name(cls, v: str) -> str:
        return (v or "").strip() or "Insights"

    @field_validator("ALLOWED_LABELS", mode="before")
    @classmethod
    def normalize_labels(cls, v):
        # accept ALLOWED_LABELS="builder,patron" from env
        if isinstance(v, str):
            return [p.strip() for p in v.split(",") if p.strip()]
        return [str(p).strip() for p in v if str(p).strip()]

    @field_validator("CORS_ORIGINS", mode="before")
    @classmethod
    def normalize_cors_origins(cls, v):
        if isinstance(v, str):
            v = v.split(",")
        return [str(p).strip().rstrip("/") for p in v if str(p).strip()]

    @field_validator("UPSTREAM_URL", "SSO_PROVIDER_URL", "GHOST_ADMIN_URL")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return (v or "").strip().rstrip("/")

    @property
    def allowed_labels(self) -> frozenset[str]:
        return frozenset(self.ALLOWED_LABELS)

    @property
    def cors_origins(self) -> list[str]:
        return list(self.CORS_ORIGINS) or [self.SSO_PROVIDER_URL]

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT.strip().lower() == "production"

    @property
    def sso_token_secret(self) -> str:
        return self.SSO_TOKEN_SECRET or self.SESSION_SECRET


def check_rp_binding(s: Settings) -> None:
    """
    WebAuthn expectation: origin host must equal rp_id or be a subdomain of it.

    Raised at startup so no ceremony is ever issued with a binding the
    browser would reject.
    """
    if not s.STRICT_RP_BINDING:
        return

    origin_host = urlparse(s.ORIGIN).hostname or ""
    rp_id = s.RP_ID
    if origin_host == rp_id or origin_host.endswith("." + rp_id):
        return

    raise ValueError(
        f"ORIGIN host '{origin_host}' does not match RP_ID '{rp_id}'. "
        f"Set RP_ID to the ORIGIN hostname or one of its parent domains."
    )

