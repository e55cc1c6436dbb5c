from __future__ import annotations

import asyncio
import json
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping, Optional, Set

import structlog
from fastapi import WebSocket
from fastapi.websockets import WebSocketDisconnect

from clinic_queue.observability import NOTIFICATIONS_EMITTED
from clinic_queue.tenancy import TenantId
from clinic_queue.time_utils import isoformat, utc_now


logger = structlog.get_logger(__name__)

ROLE_STAFF = "staff"
ROLE_DISPLAY = "display"

# client events staff may push, and the name they are rebroadcast under
RELAYED_EVENTS = {
    "patient:call": "patient:called",
    "patient:update": "patient:updated",
    "queue:update": "queue:updated",
}


@dataclass
class _Session:
    tenant: Optional[TenantId] = None
    role: Optional[str] = None


class TenantChannelHub:
    """Group live websocket connections into one channel per tenant."""

    def __init__(
        self, resolve_display_token: Optional[Callable[[str], Optional[TenantId]]] = None
    ) -> None:
        self._channels: Dict[TenantId, Set[WebSocket]] = defaultdict(set)
        self._lock = asyncio.Lock()
        self._resolve_display_token = resolve_display_token

    async def join(self, websocket: WebSocket, tenant: TenantId) -> None:
        async with self._lock:
            self._channels[tenant].add(websocket)

    async def leave(self, websocket: WebSocket, tenant: TenantId) -> None:
        async with self._lock:
            clients = self._channels.get(tenant)
            if clients:
                clients.discard(websocket)
                if not clients:
                    self._channels.pop(tenant, None)

    async def close_tenant(self, tenant: TenantId, code: int = 1008) -> int:
        """Disconnect every socket of *tenant*; return how many were closed."""

        async with self._lock:
            clients = list(self._channels.pop(tenant, ()))
        for ws in clients:
            try:
                await ws.close(code=code)
            except Exception as exc:
                logger.debug("queue_ws_close_failed", tenant_id=tenant, error=str(exc))
        if clients:
            logger.info("queue_ws_tenant_closed", tenant_id=tenant, count=len(clients))
        return len(clients)

    def connection_count(self, tenant: Optional[TenantId] = None) -> int:
        if tenant is not None:
            return len(self._channels.get(tenant, ()))
        return sum(len(clients) for clients in self._channels.values())

    async def handle(
        self,
        websocket: WebSocket,
        tenant: Optional[TenantId] = None,
        *,
        role: Optional[str] = None,
        subprotocol: Optional[str] = None,
    ) -> None:
        """Accept *websocket* and serve it until the client goes away.

        Staff and display connections join their tenant's channel straight
        away.  Anonymous connections stay outside every channel until they
        present a display token with ``tv:join``.
        """

        await websocket.accept(subprotocol=subprotocol)
        session = _Session()
        try:
            if tenant is not None:
                await self._attach(websocket, session, tenant, role or ROLE_STAFF)
            while True:
                raw = await websocket.receive_text()
                await self._dispatch(websocket, session, raw)
        except WebSocketDisconnect:
            pass
        except Exception as exc:  # pragma: no cover - connection already unusable
            logger.debug("queue_ws_receive_error", tenant_id=session.tenant, error=str(exc))
        finally:
            if session.tenant is not None:
                await self.leave(websocket, session.tenant)

    async def emit(
        self, tenant: TenantId, event: str, data: Optional[Mapping[str, Any]] = None
    ) -> int:
        """Send *event* to every connection of *tenant*; return how many received it."""

        try:
            payload = {
                "event": event,
                "data": {
                    **dict(data or {}),
                    "timestamp": isoformat(utc_now()),
                    "clinicId": tenant,
                },
            }
            delivered = await self._fanout(tenant, payload)
            NOTIFICATIONS_EMITTED.labels(event).inc()
            logger.debug("queue_event_emitted", tenant_id=tenant, ws_event=event, delivered=delivered)
            return delivered
        except Exception:
            logger.exception("queue_event_emit_failed", tenant_id=tenant, ws_event=event)
            return 0

    async def _attach(
        self, websocket: WebSocket, session: _Session, tenant: TenantId, role: str
    ) -> None:
        if session.tenant is not None and session.tenant != tenant:
            await self.leave(websocket, session.tenant)
        session.tenant = tenant
        session.role = role
        await self.join(websocket, tenant)
        joined = "tv:joined" if role == ROLE_DISPLAY else "clinic:joined"
        await websocket.send_json({"event": joined, "data": {"clinicId": tenant}})

    async def _dispatch(self, websocket: WebSocket, session: _Session, raw: str) -> None:
        try:
            message = json.loads(raw)
        except ValueError:
            await self._send_error(websocket, "Malformed message")
            return
        if not isinstance(message, dict):
            await self._send_error(websocket, "Malformed message")
            return
        event = message.get("event")
        data = message.get("data")
        if not isinstance(data, dict):
            data = {}

        if event == "ping":
            await websocket.send_json({"event": "pong", "data": {}})
        elif event == "tv:join":
            await self._join_display(websocket, session, data.get("token"))
        elif event in RELAYED_EVENTS:
            if session.role != ROLE_STAFF or session.tenant is None:
                await self._send_error(websocket, "Not authenticated")
                return
            await self.emit(session.tenant, RELAYED_EVENTS[event], data)
        else:
            logger.debug("queue_ws_unknown_event", tenant_id=session.tenant, ws_event=event)

    async def _join_display(self, websocket: WebSocket, session: _Session, token: Any) -> None:
        tenant: Optional[TenantId] = None
        if isinstance(token, str) and token and self._resolve_display_token is not None:
            tenant = self._resolve_display_token(token)
        if tenant is None:
            await websocket.send_json({"event": "tv:error", "data": {"message": "Invalid TV token"}})
            return
        await self._attach(websocket, session, tenant, ROLE_DISPLAY)

    async def _send_error(self, websocket: WebSocket, message: str) -> None:
        await websocket.send_json({"event": "error", "data": {"message": message}})

    async def _fanout(self, tenant: TenantId, payload: Mapping[str, object]) -> int:
        async with self._lock:
            clients: List[WebSocket] = list(self._channels.get(tenant, set()))
        if not clients:
            return 0
        dead: List[WebSocket] = []
        for ws in clients:
            try:
                await ws.send_json(payload)
            except Exception:
                dead.append(ws)
        if dead:
            logger.info("queue_ws_dropped_dead_clients", tenant_id=tenant, count=len(dead))
            async with self._lock:
                clients_set = self._channels.get(tenant)
                if clients_set:
                    for ws in dead:
                        clients_set.discard(ws)
                    if not clients_set:
                        self._channels.pop(tenant, None)
        return len(clients) - len(dead)


__all__ = ["TenantChannelHub", "RELAYED_EVENTS", "ROLE_STAFF", "ROLE_DISPLAY"]
