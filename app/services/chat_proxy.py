"""
Chat Proxy: the metered upstream call
=====================================

Forwards an OpenAI-compatible chat completion request to the configured
upstream. Admission (quota) is checked by the caller before this runs;
this module only performs the bounded outbound call.

    - upstream_api_key unset              → UpstreamNotConfigured (503)
    - timeout                             → UpstreamUnavailable(QG-PRX-003, 504)
    - connect / transport error           → UpstreamUnavailable (502)
    - upstream non-2xx                    → returned as-is for passthrough
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx

from app.config import Settings
from app.core.errors import UpstreamNotConfigured, UpstreamUnavailable

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class UpstreamResponse:
    status_code: int
    payload: Dict[str, Any]

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300

    @property
    def error_message(self) -> str:
        err = self.payload.get("error")
        if isinstance(err, dict):
            return str(err.get("message") or "Upstream request failed")
        if isinstance(err, str):
            return err
        return "Upstream request failed"


class ChatProxy:
    def __init__(self, settings: Settings, client: Optional[httpx.AsyncClient] = None):
        self._settings = settings
        self._client = client
        self._owns_client = client is None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self._settings.upstream_timeout_s, connect=5.0),
            )
            self._owns_client = True
        return self._client

    async def close(self) -> None:
        if self._owns_client and self._client is not None and not self._client.is_closed:
            await self._client.aclose()
        self._client = None

    def ensure_configured(self) -> None:
        if not self._settings.upstream_api_key:
            raise UpstreamNotConfigured("upstream_api_key is not set")

    async def complete(self, body: Dict[str, Any]) -> UpstreamResponse:
        self.ensure_configured()

        body = {"model": self._settings.upstream_default_model, **body}
        try:
            resp = await self._get_client().post(
                self._settings.upstream_chat_url,
                json=body,
                headers={"Authorization": f"Bearer {self._settings.upstream_api_key}"},
            )
        except httpx.TimeoutException as exc:
            logger.warning("Upstream chat timeout: %s", exc)
            raise UpstreamUnavailable("upstream timed out", code="QG-PRX-003") from exc
        except httpx.RequestError as exc:
            logger.warning("Upstream chat unreachable: %s", exc)
            raise UpstreamUnavailable(f"upstream unreachable: {exc}") from exc

        try:
            payload = resp.json()
        except ValueError:
            payload = {"error": {"message": resp.text[:500] or "Upstream returned a non-JSON body"}}
        if not isinstance(payload, dict):
            payload = {"data": payload}

        if resp.status_code >= 400:
            logger.warning(
                "upstream_chat_error",
                extra={"upstream.status": resp.status_code, "upstream.model": body.get("model")},
            )
        return UpstreamResponse(status_code=resp.status_code, payload=payload)
