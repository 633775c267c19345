"""Outbound telephony — asks the gateway to ring a technician.

Placement is fire-and-forget: the gateway reports ringing, answered and
missed outcomes back through the ``/api/telephony`` webhooks.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict, dataclass
from typing import Protocol

import httpx

from callrouter.config import settings

logger = logging.getLogger("callrouter.telephony")


@dataclass(frozen=True)
class PlaceCallRequest:
    incident_id: int
    step: int
    user_id: int
    phone: str
    ring_seconds: int


class TelephonyGateway(Protocol):
    def place_call(self, request: PlaceCallRequest) -> None:
        """Start ringing ``request.phone``; must return without waiting for the call."""


class LoggingTelephonyGateway:
    """Used when no gateway is configured: records the call in the log only."""

    def place_call(self, request: PlaceCallRequest) -> None:
        logger.warning(
            f"No telephony gateway configured; would ring user {request.user_id} "
            f"at {request.phone} for incident {request.incident_id} (step {request.step})"
        )


class HttpTelephonyGateway:
    """Posts call requests to an HTTP telephony gateway in background tasks."""

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self._transport = transport
        self._pending: set[asyncio.Task] = set()

    def place_call(self, request: PlaceCallRequest) -> None:
        task = asyncio.create_task(self._post(request), name=f"place-call-{request.incident_id}")
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _post(self, request: PlaceCallRequest) -> None:
        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}
        try:
            async with httpx.AsyncClient(transport=self._transport, timeout=self.timeout) as client:
                resp = await client.post(f"{self.base_url}/calls", json=asdict(request), headers=headers)
                resp.raise_for_status()
            logger.info(f"Call placed to user {request.user_id} for incident {request.incident_id}")
        except httpx.HTTPError as exc:
            # The attempt stays ringing; the scheduler times it out and escalates.
            logger.error(
                f"Telephony gateway rejected call to user {request.user_id} "
                f"for incident {request.incident_id}: {exc}"
            )

    async def drain(self) -> None:
        """Wait for in-flight placement requests (used on shutdown and in tests)."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)


def build_gateway() -> TelephonyGateway:
    if settings.telephony_gateway_url:
        return HttpTelephonyGateway(
            settings.telephony_gateway_url,
            api_key=settings.telephony_api_key,
            timeout=settings.telephony_timeout_seconds,
        )
    return LoggingTelephonyGateway()
