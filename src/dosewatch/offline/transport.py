"""Delivery of queued actions to the dosewatch REST API."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Protocol

import httpx

from dosewatch.offline.models import QueuedAction, QueuedOperation, SyncRejection

logger = logging.getLogger(__name__)


class TransientSyncError(RuntimeError):
    """Delivery failed in a way that may succeed on retry (network, 5xx, 429)."""


@dataclass
class SyncOutcome:
    applied: bool
    response: dict[str, Any] | None = None
    replayed: bool = False
    rejection: SyncRejection | None = None


class SyncTransport(Protocol):
    async def send(self, action: QueuedAction) -> SyncOutcome:
        """Deliver *action*; raise TransientSyncError for retryable failures."""
        ...


def _safe_error(response: httpx.Response) -> tuple[str, str, dict[str, Any]]:
    try:
        payload = response.json()
    except ValueError:
        payload = None
    if isinstance(payload, dict):
        error = payload.get("error")
        if isinstance(error, dict):
            return (
                str(error.get("code") or f"http_{response.status_code}"),
                " ".join(str(error.get("message", "")).split())[:500],
                error.get("details") or {},
            )
        detail = payload.get("detail")
        if detail is not None:
            return f"http_{response.status_code}", str(detail)[:500], {}
    return f"http_{response.status_code}", response.reason_phrase or "", {}


class HttpSyncTransport:
    """SyncTransport speaking the JSON REST surface under ``/api``."""

    def __init__(
        self,
        base_url: str | None = None,
        *,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        if http_client is None and base_url is None:
            raise ValueError("HttpSyncTransport needs a base_url or an http_client")
        self._owns_http_client = http_client is None
        self._http_client = (
            http_client
            if http_client is not None
            else httpx.AsyncClient(base_url=base_url, timeout=httpx.Timeout(20.0, connect=10.0))
        )

    async def aclose(self) -> None:
        if self._owns_http_client:
            await self._http_client.aclose()

    def _request_for(self, action: QueuedAction) -> tuple[str, str, dict[str, Any]]:
        payload = dict(action.payload)
        if action.operation == QueuedOperation.RECORD:
            payload["idempotency_key"] = action.idempotency_key
            payload.setdefault("client_recorded_at", action.created_at.isoformat())
            return "POST", "/api/administrations", payload

        administration_id = payload.pop("administration_id")
        if action.operation == QueuedOperation.UNDO:
            return "POST", f"/api/administrations/{administration_id}/undo", payload
        if action.operation == QueuedOperation.COSIGN:
            return "POST", f"/api/administrations/{administration_id}/cosign", payload
        return "PATCH", f"/api/administrations/{administration_id}", payload

    async def send(self, action: QueuedAction) -> SyncOutcome:
        method, path, body = self._request_for(action)
        try:
            response = await self._http_client.request(
                method,
                path,
                json=body,
                headers={"Idempotency-Key": action.idempotency_key},
            )
        except httpx.HTTPError as exc:
            raise TransientSyncError(f"{type(exc).__name__}: {exc}") from exc

        if response.status_code == 429 or response.status_code >= 500:
            raise TransientSyncError(f"Server responded {response.status_code} for {path}")

        if 200 <= response.status_code < 300:
            try:
                payload = response.json()
            except ValueError as exc:
                raise TransientSyncError(f"Invalid JSON from {path}") from exc
            meta = payload.get("meta") or {}
            return SyncOutcome(
                applied=True,
                response=payload.get("data"),
                replayed=bool(meta.get("replayed")),
            )

        code, message, details = _safe_error(response)
        logger.info(
            "Server rejected queued %s %s: %s (%s)",
            action.operation.value,
            action.idempotency_key,
            code,
            response.status_code,
        )
        return SyncOutcome(
            applied=False,
            rejection=SyncRejection(
                code=code, message=message, status_code=response.status_code, details=details
            ),
        )
