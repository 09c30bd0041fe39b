"""
Identity Provider Client
========================

PURPOSE:
    Introspects an OAuth access token against Google's tokeninfo endpoint
    and returns the subject the provider vouches for.

    Every failure mode (non-2xx, timeout, transport error, malformed body,
    missing subject, expired token, audience mismatch) collapses into a
    single CredentialInvalid. The caller cannot and should not distinguish
    "provider down" from "token bad": both mean the sign-in is refused.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

import httpx

from app.config import Settings
from app.core.errors import CredentialInvalid

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class VerifiedIdentity:
    """What the provider asserts about the credential's owner."""

    subject_id: str
    email: Optional[str] = None
    email_verified: bool = False
    expires_in: Optional[int] = None


class GoogleIdentityProvider:
    """Access-token introspection via the tokeninfo endpoint."""

    def __init__(self, settings: Settings, client: Optional[httpx.AsyncClient] = None):
        self._settings = settings
        self._client = client
        self._owns_client = client is None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            timeout = self._settings.identity_timeout_s
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(timeout, connect=min(timeout, 5.0)))
            self._owns_client = True
        return self._client

    async def close(self) -> None:
        if self._owns_client and self._client is not None and not self._client.is_closed:
            await self._client.aclose()
        self._client = None

    async def introspect(self, access_token: str) -> VerifiedIdentity:
        if not access_token:
            raise CredentialInvalid("empty credential")

        try:
            resp = await self._get_client().get(
                self._settings.google_tokeninfo_url,
                params={"access_token": access_token},
            )
        except httpx.TimeoutException as exc:
            logger.warning("Identity provider timeout: %s", exc)
            raise CredentialInvalid("identity provider timed out") from exc
        except httpx.RequestError as exc:
            logger.warning("Identity provider unreachable: %s", exc)
            raise CredentialInvalid("identity provider unreachable") from exc

        if resp.status_code != 200:
            raise CredentialInvalid(
                f"tokeninfo returned {resp.status_code}",
                context={"provider.status": resp.status_code},
            )

        try:
            data = resp.json()
        except ValueError as exc:
            raise CredentialInvalid("tokeninfo returned malformed JSON") from exc
        if not isinstance(data, dict):
            raise CredentialInvalid("tokeninfo returned a non-object body")

        # tokeninfo reports the subject as user_id for access tokens, sub for id tokens
        subject = data.get("user_id") or data.get("sub")
        if not subject:
            raise CredentialInvalid("tokeninfo response carries no subject")

        expires_in = data.get("expires_in")
        if expires_in is not None:
            try:
                expires_in = int(expires_in)
            except (TypeError, ValueError) as exc:
                raise CredentialInvalid("tokeninfo expires_in is not an integer") from exc
            if expires_in <= 0:
                raise CredentialInvalid("credential expired")

        client_id = self._settings.google_client_id
        if client_id:
            audience = data.get("aud") or data.get("azp") or data.get("audience") or data.get("issued_to")
            if audience != client_id:
                raise CredentialInvalid(
                    "credential issued for a different client",
                    context={"provider.audience": audience},
                )

        email_verified = str(data.get("email_verified", "")).lower() == "true"
        return VerifiedIdentity(
            subject_id=str(subject),
            email=data.get("email"),
            email_verified=email_verified,
            expires_in=expires_in,
        )
