"""
authgate/passkeys.py

Passkey (WebAuthn) ceremonies.

Split of responsibilities:

  PasskeyVerifier      external capability: builds ceremony options and does
                       ALL cryptography (attestation / assertion signatures,
                       origin + RP-ID binding). Exactly four operations.

  PasskeyOrchestrator  owns everything stateful: challenge issuance and
                       consumption, credential persistence, and the sign
                       counter discipline (replay defense).

Challenges:
  - keyed by email for registration and email-scoped login
  - keyed by "ceremony:<handle>" for discoverable (identity-less) login; the
    handle is returned to the browser as `ceremonyId` and echoed on finish
  - fixed TTL from creation, consumed by every finish attempt (success or not)

Counter rule:
  an assertion is accepted only if the reported counter is STRICTLY greater
  than the stored one, even when the verifier itself accepted the signature.
  The stored counter then moves by compare-and-swap, so two concurrent
  assertions carrying the same counter cannot both succeed.
"""

from __future__ import annotations

import hashlib
import json
import secrets
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Protocol

from loguru import logger
from webauthn import (
    generate_authentication_options,
    generate_registration_options,
    options_to_json,
    verify_authentication_response,
    verify_registration_response,
)
from webauthn.helpers import base64url_to_bytes, bytes_to_base64url
from webauthn.helpers.cose import COSEAlgorithmIdentifier
from webauthn.helpers.exceptions import WebAuthnException
from webauthn.helpers.structs import (
    AuthenticatorSelectionCriteria,
    AuthenticatorTransport,
    PublicKeyCredentialDescriptor,
    ResidentKeyRequirement,
    UserVerificationRequirement,
)

from .errors import GatewayError
from .storage import Challenge, Credential, CredentialStore, DuplicateCredentialError, b64url_token, now_epoch

CEREMONY_PREFIX = "ceremony:"

SUPPORTED_ALGORITHMS = [
    COSEAlgorithmIdentifier.ECDSA_SHA_256,
    COSEAlgorithmIdentifier.RSASSA_PKCS1_v1_5_SHA_256,
]


class NoCredentialsError(GatewayError):
    status_code = 500
    default_error = "No passkeys registered for this email"


# -----------------------------------------------------------------------------
# External capability
# -----------------------------------------------------------------------------
@dataclass
class RegistrationResult:
    verified: bool
    credential_id: str = ""
    public_key: bytes = b""
    transports: List[str] = field(default_factory=list)


@dataclass
class AssertionResult:
    verified: bool
    new_counter: int = 0


class PasskeyVerifier(Protocol):
    async def registration_options(
        self,
        *,
        challenge: str,
        user_id: bytes,
        user_name: str,
        display_name: str,
        exclude: List[Credential],
    ) -> Dict[str, Any]: ...

    async def verify_registration(self, *, challenge: str, response: Dict[str, Any]) -> RegistrationResult: ...

    async def authentication_options(self, *, challenge: str, allow: List[Credential]) -> Dict[str, Any]: ...

    async def verify_authentication(
        self,
        *,
        challenge: str,
        response: Dict[str, Any],
        public_key: bytes,
        counter: int,
    ) -> AssertionResult: ...


def _descriptor(cred: Credential) -> PublicKeyCredentialDescriptor:
    transports = []
    for t in cred.transports:
        try:
            transports.append(AuthenticatorTransport(t))
        except ValueError:
            continue
    return PublicKeyCredentialDescriptor(id=base64url_to_bytes(cred.credential_id), transports=transports or None)


class WebAuthnVerifier:
    """PasskeyVerifier backed by py_webauthn, bound to one RP + origin."""

    def __init__(self, rp_id: str, rp_name: str, origin: str, timeout_ms: int = 60000):
        self.rp_id = rp_id
        self.rp_name = rp_name
        self.origin = origin
        self.timeout_ms = timeout_ms

    async def registration_options(self, *, challenge, user_id, user_name, display_name, exclude):
        options = generate_registration_options(
            rp_id=self.rp_id,
            rp_name=self.rp_name,
            user_id=user_id,
            user_name=user_name,
            user_display_name=display_name,
            challenge=base64url_to_bytes(challenge),
            timeout=self.timeout_ms,
            authenticator_selection=AuthenticatorSelectionCriteria(
                resident_key=ResidentKeyRequirement.PREFERRED,
                user_verification=UserVerificationRequirement.PREFERRED,
            ),
            exclude_credentials=[_descriptor(c) for c in exclude],
            supported_pub_key_algs=SUPPORTED_ALGORITHMS,
        )
        return json.loads(options_to_json(options))

    async def verify_registration(self, *, challenge, response):
        try:
            verification = verify_registration_response(
                credential=response,
                expected_challenge=base64url_to_bytes(challenge),
                expected_origin=self.origin,
                expected_rp_id=self.rp_id,
            )
        except (WebAuthnException, ValueError, KeyError, TypeError) as e:
            logger.info(f"passkey registration rejected by verifier: {e}")
            return RegistrationResult(verified=False)

        transports = (response.get("response") or {}).get("transports") or []
        return RegistrationResult(
            verified=True,
            credential_id=bytes_to_base64url(verification.credential_id),
            public_key=verification.credential_public_key,
            transports=[str(t) for t in transports],
        )

    async def authentication_options(self, *, challenge, allow):
        options = generate_authentication_options(
            rp_id=self.rp_id,
            challenge=base64url_to_bytes(challenge),
            timeout=self.timeout_ms,
            allow_credentials=[_descriptor(c) for c in allow],
            user_verification=UserVerificationRequirement.PREFERRED,
        )
        return json.loads(options_to_json(options))

    async def verify_authentication(self, *, challenge, response, public_key, counter):
        try:
            verification = verify_authentication_response(
                credential=response,
                expected_challenge=base64url_to_bytes(challenge),
                expected_rp_id=self.rp_id,
                expected_origin=self.origin,
                credential_public_key=public_key,
                credential_current_sign_count=counter,
            )
        except (WebAuthnException, ValueError, KeyError, TypeError) as e:
            logger.info(f"passkey assertion rejected by verifier: {e}")
            return AssertionResult(verified=False)

        return AssertionResult(verified=True, new_counter=int(verification.new_sign_count))


# -----------------------------------------------------------------------------
# Orchestrator
# -----------------------------------------------------------------------------
@dataclass
class AuthenticationOutcome:
    verified: bool
    email: Optional[str] = None
    credential_id: Optional[str] = None
    reason: str = "ok"


def user_handle(email: str) -> bytes:
    # opaque, stable, no PII in the authenticator
    return hashlib.sha256(email.strip().lower().encode("utf-8")).digest()


def credential_id_of(response: Dict[str, Any]) -> str:
    return str(response.get("id") or response.get("rawId") or "").strip()


class PasskeyOrchestrator:
    def __init__(
        self,
        store: CredentialStore,
        verifier: PasskeyVerifier,
        challenge_ttl_seconds: int = 600,
        clock: Callable[[], int] = now_epoch,
    ):
        self.store = store
        self.verifier = verifier
        self.challenge_ttl_seconds = challenge_ttl_seconds
        self._clock = clock

    @staticmethod
    def _new_challenge() -> str:
        return bytes_to_base64url(secrets.token_bytes(32))

    async def _take_live_challenge(self, key: str) -> Optional[Challenge]:
        ch = await self.store.take_challenge(key)
        if ch is None:
            return None
        if ch.is_expired(self._clock(), self.challenge_ttl_seconds):
            return None
        return ch

    # -------------------------------------------------------------------------
    # Registration (caller must already hold an authenticated session)
    # -------------------------------------------------------------------------
    async def begin_registration(self, email: str, display_name: str) -> Dict[str, Any]:
        challenge = self._new_challenge()
        existing = await self.store.list_credentials(email)
        await self.store.put_challenge(Challenge(key=email, challenge=challenge, created_at=self._clock()))

        return await self.verifier.registration_options(
            challenge=challenge,
            user_id=user_handle(email),
            user_name=email,
            display_name=display_name or email,
            exclude=existing,
        )

    async def finish_registration(
        self,
        email: str,
        response: Dict[str, Any],
        device_name: Optional[str] = None,
    ) -> bool:
        ch = await self._take_live_challenge(email)
        if ch is None:
            logger.info("passkey registration: no live challenge on file")
            return False

        result = await self.verifier.verify_registration(challenge=ch.challenge, response=response)
        if not result.verified:
            return False

        cred = Credential(
            credential_id=result.credential_id,
            email=email,
            public_key=result.public_key,
            counter=0,
            transports=result.transports,
            device_name=(device_name or "").strip()[:100] or None,
            created_at=self._clock(),
        )
        try:
            await self.store.add_credential(cred)
        except DuplicateCredentialError:
            logger.warning("passkey registration: credential id already registered")
            return False

        return True

    # -------------------------------------------------------------------------
    # Authentication (identity-less capable)
    # -------------------------------------------------------------------------
    async def begin_authentication(self, email: Optional[str] = None) -> Dict[str, Any]:
        challenge = self._new_challenge()

        if email:
            allow = await self.store.list_credentials(email)
            if not allow:
                raise NoCredentialsError()
            key = email
            ceremony_id = None
        else:
            allow = []
            ceremony_id = b64url_token(16)
            key = CEREMONY_PREFIX + ceremony_id

        await self.store.put_challenge(Challenge(key=key, challenge=challenge, created_at=self._clock()))

        options = await self.verifier.authentication_options(challenge=challenge, allow=allow)
        if ceremony_id:
            options["ceremonyId"] = ceremony_id
        return options

    async def finish_authentication(
        self,
        email: Optional[str],
        response: Dict[str, Any],
        ceremony_id: Optional[str] = None,
    ) -> AuthenticationOutcome:
        credential_id = credential_id_of(response)
        if not credential_id:
            return AuthenticationOutcome(False, reason="missing_credential_id")

        key = CEREMONY_PREFIX + ceremony_id if ceremony_id else email
        if not key:
            return AuthenticationOutcome(False, reason="no_challenge")

        ch = await self._take_live_challenge(key)
        if ch is None:
            return AuthenticationOutcome(False, credential_id=credential_id, reason="no_challenge")

        # looked up by the assertion's credential id; `email` is advisory only
        cred = await self.store.get_credential(credential_id)
        if cred is None:
            return AuthenticationOutcome(False, credential_id=credential_id, reason="unknown_credential")

        if email and email != cred.email:
            logger.info("passkey assertion: credential owner differs from advisory email")

        result = await self.verifier.verify_authentication(
            challenge=ch.challenge,
            response=response,
            public_key=cred.public_key,
            counter=cred.counter,
        )
        if not result.verified:
            return AuthenticationOutcome(False, credential_id=credential_id, reason="invalid_assertion")

        if result.new_counter <= cred.counter:
            logger.warning(
                f"passkey replay suspected: counter {result.new_counter} <= stored {cred.counter}"
            )
            return AuthenticationOutcome(False, credential_id=credential_id, reason="replay_counter")

        if not await self.store.compare_and_set_counter(credential_id, cred.counter, result.new_counter):
            return AuthenticationOutcome(False, credential_id=credential_id, reason="counter_race")

        return AuthenticationOutcome(True, email=cred.email, credential_id=credential_id)
