"""Realtime change feed for logged-in sessions.

Each write that other sessions care about is published as
``{"table", "event", "record"}`` to the websockets allowed to see the row.
Clients patch their cached lists with :func:`apply_change` and schedule a
background refetch; ordering only matters per primary key (last write wins).
"""

from __future__ import annotations

import asyncio
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Mapping, MutableSequence, Optional, Set

import structlog
from fastapi import WebSocket
from fastapi.websockets import WebSocketDisconnect

logger = structlog.get_logger(__name__)

INSERT = "INSERT"
UPDATE = "UPDATE"
DELETE = "DELETE"
EVENTS = (INSERT, UPDATE, DELETE)


@dataclass(frozen=True)
class Audience:
    """Who may receive a change: explicit users, staff, or everyone."""

    user_ids: frozenset = frozenset()
    staff: bool = False
    everyone: bool = False

    @classmethod
    def users(cls, *user_ids: Optional[str], staff: bool = False) -> "Audience":
        return cls(user_ids=frozenset(u for u in user_ids if u), staff=staff)

    @classmethod
    def all(cls) -> "Audience":
        return cls(everyone=True)

    def includes(self, user_id: str, role: Optional[str]) -> bool:
        if self.everyone or user_id in self.user_ids:
            return True
        return self.staff and role in {"admin", "instructor"}


@dataclass
class _Client:
    websocket: WebSocket
    role: Optional[str]


class ChangeFeedManager:
    """Manage change feed websocket sessions per user."""

    def __init__(self) -> None:
        self._clients: Dict[str, List[_Client]] = defaultdict(list)
        self._lock = asyncio.Lock()

    async def handle(self, websocket: WebSocket, user_id: str, role: Optional[str]) -> None:
        """Accept *websocket* and keep it registered until the peer disconnects."""

        await websocket.accept()
        await websocket.send_json({"event": "connected"})
        client = _Client(websocket=websocket, role=role)
        async with self._lock:
            self._clients[user_id].append(client)
        try:
            while True:
                await websocket.receive_text()
        except WebSocketDisconnect:
            pass
        finally:
            async with self._lock:
                clients = self._clients.get(user_id)
                if clients and client in clients:
                    clients.remove(client)
                    if not clients:
                        self._clients.pop(user_id, None)

    def connected_users(self) -> Set[str]:
        return set(self._clients)

    async def publish(
        self,
        table: str,
        event: str,
        record: Mapping[str, Any],
        audience: Audience,
    ) -> int:
        """Send a change to every connected client in *audience*; return deliveries."""

        if event not in EVENTS:
            raise ValueError(f"Unknown change event {event!r}")
        payload = {"table": table, "event": event, "record": dict(record)}
        async with self._lock:
            targets = [
                (user_id, client)
                for user_id, clients in self._clients.items()
                for client in clients
                if audience.includes(user_id, client.role)
            ]
        delivered = 0
        dead: List[tuple] = []
        for user_id, client in targets:
            try:
                await client.websocket.send_json(payload)
                delivered += 1
            except Exception as exc:
                logger.debug("change_feed_send_failed", user_id=user_id, error=str(exc))
                dead.append((user_id, client))
        if dead:
            async with self._lock:
                for user_id, client in dead:
                    clients = self._clients.get(user_id)
                    if clients and client in clients:
                        clients.remove(client)
                        if not clients:
                            self._clients.pop(user_id, None)
        return delivered


def apply_change(
    rows: MutableSequence[Dict[str, Any]],
    change: Mapping[str, Any],
    *,
    key: str = "id",
) -> MutableSequence[Dict[str, Any]]:
    """Patch *rows* in place with a change event, matching on *key*.

    Inserts of an existing key and updates of a missing key both upsert, so
    replaying events in arrival order converges on the last write.
    """

    event = change.get("event")
    record = dict(change.get("record") or {})
    identifier = record.get(key)
    if identifier is None:
        return rows
    index = next((i for i, row in enumerate(rows) if row.get(key) == identifier), None)
    if event == DELETE:
        if index is not None:
            del rows[index]
    elif event in (INSERT, UPDATE):
        if index is None:
            rows.insert(0, record)
        else:
            rows[index] = {**rows[index], **record}
    return rows


def replay(rows: Iterable[Dict[str, Any]], changes: Iterable[Mapping[str, Any]], *, key: str = "id"):
    """Apply *changes* in order to a copy of *rows* and return it."""

    patched: List[Dict[str, Any]] = [dict(r) for r in rows]
    for change in changes:
        apply_change(patched, change, key=key)
    return patched


__all__ = [
    "Audience",
    "ChangeFeedManager",
    "DELETE",
    "INSERT",
    "UPDATE",
    "apply_change",
    "replay",
]
