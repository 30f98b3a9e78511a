from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Protocol, Set

import httpx

from shared.clock import ensure_utc
from shared.contracts.models import ReminderPayload

_LOGGER = logging.getLogger(__name__)

REMINDER_ID_PREFIX = "treatment-"


def reminder_id(treatment_id: str, sequence_index: Optional[int] = None) -> str:
    """``treatment-{id}`` for the single next-due reminder, ``treatment-{id}-{i}`` for a batch."""
    base = f"{REMINDER_ID_PREFIX}{treatment_id}"
    return base if sequence_index is None else f"{base}-{sequence_index}"


def belongs_to(candidate: str, treatment_id: str) -> bool:
    base = reminder_id(treatment_id)
    if candidate == base:
        return True
    suffix = candidate[len(base) + 1 :]
    return candidate.startswith(base + "-") and suffix.isdigit()


class GatewayError(RuntimeError):
    """The notification capability could not be reached or refused a call."""


class NotificationGateway(Protocol):
    async def is_authorized(self) -> bool:
        ...

    async def request_authorization(self) -> bool:
        ...

    async def schedule(self, reminder_id: str, fire_at: datetime, payload: ReminderPayload) -> bool:
        ...

    async def cancel(self, reminder_ids: Iterable[str]) -> None:
        ...

    async def cancel_all(self) -> None:
        ...

    async def list_pending(self) -> Set[str]:
        ...


@dataclass(frozen=True)
class ScheduledNotification:
    reminder_id: str
    fire_at: datetime
    payload: ReminderPayload


@dataclass
class InMemoryNotificationGateway:
    """Process-local notification capability.

    ``grant_on_request`` stands in for the user's answer to the permission
    prompt.
    """

    authorized: bool = False
    grant_on_request: bool = True
    pending: Dict[str, ScheduledNotification] = field(default_factory=dict)
    cancelled: List[str] = field(default_factory=list)

    async def is_authorized(self) -> bool:
        return self.authorized

    async def request_authorization(self) -> bool:
        self.authorized = self.authorized or self.grant_on_request
        return self.authorized

    async def schedule(self, reminder_id: str, fire_at: datetime, payload: ReminderPayload) -> bool:
        if not self.authorized:
            return False
        self.pending[reminder_id] = ScheduledNotification(reminder_id, ensure_utc(fire_at), payload)
        return True

    async def cancel(self, reminder_ids: Iterable[str]) -> None:
        for rid in reminder_ids:
            if self.pending.pop(rid, None) is not None:
                self.cancelled.append(rid)

    async def cancel_all(self) -> None:
        self.cancelled.extend(self.pending)
        self.pending.clear()

    async def list_pending(self) -> Set[str]:
        return set(self.pending)

    def due(self, now: datetime) -> List[ScheduledNotification]:
        """Remove and return the notifications whose fire time has passed."""
        now = ensure_utc(now)
        fired = sorted(
            (n for n in self.pending.values() if n.fire_at <= now),
            key=lambda n: n.fire_at,
        )
        for notification in fired:
            del self.pending[notification.reminder_id]
        return fired


class HttpNotificationGateway:
    """Gateway backed by a local notifier daemon speaking JSON over HTTP."""

    def __init__(
        self,
        base_url: str,
        timeout: float = 5.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._client = client or httpx.AsyncClient(base_url=base_url.rstrip("/"), timeout=timeout)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, url: str, **kwargs) -> httpx.Response:
        try:
            response = await self._client.request(method, url, **kwargs)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise GatewayError(f"Notifier unreachable: {exc}") from exc
        return response

    @staticmethod
    def _body(response: httpx.Response) -> Dict[str, Any]:
        """Decoded JSON object of a reply; an empty reply reads as an empty object."""
        if not response.content:
            return {}
        try:
            body = response.json()
        except ValueError as exc:
            raise GatewayError(f"Notifier sent an unreadable reply: {exc}") from exc
        if not isinstance(body, dict):
            raise GatewayError(f"Notifier sent a {type(body).__name__} where an object was expected")
        return body

    async def is_authorized(self) -> bool:
        response = await self._request("GET", "/authorization")
        return bool(self._body(response).get("authorized", False))

    async def request_authorization(self) -> bool:
        response = await self._request("POST", "/authorization")
        return bool(self._body(response).get("authorized", False))

    async def schedule(self, reminder_id: str, fire_at: datetime, payload: ReminderPayload) -> bool:
        try:
            response = await self._request(
                "PUT",
                f"/reminders/{reminder_id}",
                json={
                    "fire_at": ensure_utc(fire_at).isoformat(),
                    "payload": payload.model_dump(mode="json"),
                },
            )
            body = self._body(response)
        except GatewayError as exc:
            _LOGGER.warning("Scheduling %s failed: %s", reminder_id, exc)
            return False
        return bool(body.get("scheduled", True))

    async def cancel(self, reminder_ids: Iterable[str]) -> None:
        ids = sorted(set(reminder_ids))
        if ids:
            await self._request("POST", "/reminders/cancel", json={"ids": ids})

    async def cancel_all(self) -> None:
        await self._request("DELETE", "/reminders")

    async def list_pending(self) -> Set[str]:
        response = await self._request("GET", "/reminders")
        ids = self._body(response).get("ids", [])
        if not isinstance(ids, list):
            raise GatewayError("Notifier sent a pending listing without an id list")
        return {str(rid) for rid in ids}
