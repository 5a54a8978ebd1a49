"""HTTP collaborators: the satellite simulator and the Space-SOC event sink."""

from __future__ import annotations

import logging
from typing import Any, Mapping, Optional

import httpx
from pydantic import ValidationError

from ttc_core.pipeline import AuditDeliveryError, ForwardError, ForwardReply, ForwardTimeout

from .models import AuditEvent, SatelliteReply

logger = logging.getLogger(__name__)

COMMAND_PATH = "/command"
EVENTS_PATH = "/api/v1/events"


class SatelliteClient:
    """Forwards authorized commands to the satellite simulator."""

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 5.0,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self._client = httpx.Client(base_url=base_url, timeout=timeout, transport=transport)

    def forward(self, payload: Mapping[str, Any], *, timeout: float) -> ForwardReply:
        try:
            response = self._client.post(COMMAND_PATH, json=dict(payload), timeout=timeout)
            response.raise_for_status()
        except httpx.TimeoutException as exc:
            raise ForwardTimeout(f"satellite did not answer within {timeout:.2f}s") from exc
        except httpx.HTTPStatusError as exc:
            raise ForwardError(f"satellite answered with HTTP {exc.response.status_code}") from exc
        except httpx.HTTPError as exc:
            raise ForwardError(f"satellite request failed: {exc}") from exc

        try:
            reply = SatelliteReply.model_validate(response.json())
        except (ValueError, ValidationError) as exc:
            raise ForwardError(f"satellite returned an unreadable reply: {exc}") from exc
        return ForwardReply(status=reply.status, message=reply.message)

    def close(self) -> None:
        self._client.close()


class SOCAuditClient:
    """Delivers audit events to the Space-SOC ingestion endpoint.

    A failed delivery is retried at most ``retries`` times before
    :class:`AuditDeliveryError` is raised.
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 2.0,
        retries: int = 1,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self._client = httpx.Client(base_url=base_url, timeout=timeout, transport=transport)
        self._retries = max(0, retries)

    def emit(self, event: Mapping[str, Any], *, timeout: float) -> None:
        try:
            body = AuditEvent.model_validate(dict(event)).wire()
        except ValidationError as exc:
            raise AuditDeliveryError(f"invalid audit event: {exc}") from exc

        last_error = "no attempt made"
        for attempt in range(self._retries + 1):
            try:
                response = self._client.post(EVENTS_PATH, json=body, timeout=timeout)
            except httpx.HTTPError as exc:
                last_error = f"{type(exc).__name__}: {exc}"
            else:
                if response.status_code == httpx.codes.CREATED:
                    return
                last_error = f"unexpected HTTP {response.status_code}"
            if attempt < self._retries:
                logger.debug("Retrying %s audit event after: %s", body.get("eventType"), last_error)

        raise AuditDeliveryError(f"Space-SOC rejected {body.get('eventType')} event: {last_error}")

    def close(self) -> None:
        self._client.close()


__all__ = ["COMMAND_PATH", "EVENTS_PATH", "SOCAuditClient", "SatelliteClient"]
