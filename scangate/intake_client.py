from __future__ import annotations
"""
Station-side clients for the scan intake.

Polymorphic interface, two concrete implementations:
  - InProcessIntakeClient : calls ScanIntake.process() directly (same process)
  - HttpIntakeClient      : POST /scans/intake over a shared httpx.AsyncClient

submit() returns the success body, or raises:
  - TransientIntakeError  (transport error / timeout / 5xx / 408 / 429)
                          status is None when the server was never reached
  - IntakeRejectedError   (structured denial or malformed payload; kind says which)
"""

import logging
import sqlite3
import time
from typing import Any, Dict, Optional

import httpx

from .errors import ErrorKind, IntakeRejectedError, TransientIntakeError, classify_status
from .intake import ScanIntake
from .models import ScanRequest

INTAKE_PATH = "/scans/intake"
HEALTH_PATH = "/healthz"

log = logging.getLogger("scangate.client")


class IntakeClient:
    async def start(self) -> None:
        """Optional background resources."""
        return

    async def stop(self) -> None:
        """Graceful shutdown hook."""
        return

    async def ping(self) -> bool:
        """True when the intake can be reached right now."""
        raise NotImplementedError

    async def submit(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        raise NotImplementedError


class InProcessIntakeClient(IntakeClient):
    """Used when the station and the intake share one process (kiosk mode, tests)."""

    def __init__(self, intake: ScanIntake):
        self.intake = intake

    async def ping(self) -> bool:
        return True

    async def submit(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        try:
            req = ScanRequest(
                control_type_id=str(payload["controlTypeId"]),
                event_id=str(payload["eventId"]),
                ticket_id=payload.get("ticketId"),
                cedula=payload.get("cedula"),
                device=payload.get("device"),
                client_scan_id=payload.get("clientScanId"),
                notes=payload.get("notes"),
            )
        except KeyError as ke:
            raise IntakeRejectedError(f"missing field {ke}", status=400, kind=ErrorKind.VALIDATION) from ke

        try:
            outcome = await self.intake.process(req)
        except sqlite3.OperationalError as ex:
            # Locked/unavailable database is the in-process equivalent of a 503.
            raise TransientIntakeError(f"{type(ex).__name__}: {ex}", status=503) from ex

        body = outcome.to_payload()
        if outcome.accepted:
            return body
        raise IntakeRejectedError(outcome.message, status=outcome.status_code, payload=body,
                                  kind=classify_status(outcome.status_code))


class HttpIntakeClient(IntakeClient):
    """
    Posts scans to the intake with a shared AsyncClient.
    `transport` lets callers swap the network for an in-process ASGI app or a mock.
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout_ms: int = 5000,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout_ms / 1000.0
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

        # Observability counters (simple integers; emit in logs)
        self.send_attempts = 0
        self.sent_ok = 0
        self.sent_failed = 0

    async def start(self) -> None:
        if self._client is None:
            self._client = httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout,
                                             transport=self._transport)

    async def stop(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _ensure_client(self) -> httpx.AsyncClient:
        await self.start()
        if self._client is None:
            raise RuntimeError(f"intake client for {self.base_url} did not start")
        return self._client

    async def ping(self) -> bool:
        """Any HTTP answer from /healthz means the intake is reachable again."""
        client = await self._ensure_client()
        try:
            await client.get(HEALTH_PATH)
        except httpx.TransportError as e:
            log.debug("ping_unreachable", extra={"err": str(e) or type(e).__name__})
            return False
        return True

    async def submit(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        client = await self._ensure_client()

        self.send_attempts += 1
        t0 = time.perf_counter()
        try:
            resp = await client.post(INTAKE_PATH, json=payload)
        except httpx.TransportError as e:
            self.sent_failed += 1
            log.warning("http_error", extra={"scan_id": payload.get("clientScanId"), "err": str(e) or type(e).__name__})
            raise TransientIntakeError(f"{type(e).__name__}: {e}") from e

        latency_ms = round((time.perf_counter() - t0) * 1000, 1)
        try:
            data = resp.json()
        except ValueError:
            data = {}
        if not isinstance(data, dict):
            data = {"detail": data}

        if 200 <= resp.status_code < 300 and data.get("success"):
            self.sent_ok += 1
            log.info("intake_ok", extra={"scan_id": payload.get("clientScanId"),
                                         "status": resp.status_code, "latency_ms": latency_ms})
            return data

        self.sent_failed += 1
        message = str(data.get("error_message") or data.get("detail") or f"HTTP {resp.status_code}")
        log.warning("http_non_2xx", extra={"scan_id": payload.get("clientScanId"),
                                           "status": resp.status_code, "latency_ms": latency_ms})

        if 200 <= resp.status_code < 300:
            # 2xx without success=true: the intake answered but did not record the scan.
            raise IntakeRejectedError(message, status=resp.status_code, payload=data)

        kind = classify_status(resp.status_code)
        if kind is ErrorKind.TRANSIENT:
            raise TransientIntakeError(message, status=resp.status_code, payload=data)
        raise IntakeRejectedError(message, status=resp.status_code, payload=data, kind=kind)
