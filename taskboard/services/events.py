import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Protocol

logger = logging.getLogger(__name__)

GLOBAL_ROOM = "board:all"


def user_room(user_id: str) -> str:
    return f"user:{user_id}"


class Connection(Protocol):
    """The transport side of one real-time client (e.g. a WebSocket)."""

    id: str

    async def send_json(self, data: dict) -> None: ...

    async def close(self, code: int = 1000) -> None: ...


@dataclass
class _Outgoing:
    rooms: tuple[str, ...]
    message: dict[str, Any]


@dataclass
class _Client:
    connection: Connection
    rooms: set[str] = field(default_factory=set)
    user: Any = None


class EventHub:
    """
    Fans task and star events out to connected real-time clients.

    Every connection joins the global room on connect and its user room
    once it authenticates. ``publish`` only enqueues: a dispatcher task
    delivers, so a slow or broken client never delays or fails the
    mutation that produced the event.
    """

    def __init__(self, queue_size: int = 1000):
        self._queue: asyncio.Queue[_Outgoing] = asyncio.Queue(maxsize=queue_size)
        self._clients: dict[str, _Client] = {}
        self._rooms: dict[str, set[str]] = {}
        self._dispatcher: asyncio.Task | None = None
        self.connection_stats = {
            "totalConnections": 0,
            "totalAuthentications": 0,
            "failedAuthentications": 0,
            "totalDisconnections": 0,
            "droppedEvents": 0,
        }

    # ── lifecycle ───────────────────────────────────────

    @property
    def running(self) -> bool:
        return self._dispatcher is not None and not self._dispatcher.done()

    async def start(self) -> None:
        if not self.running:
            self._dispatcher = asyncio.create_task(self._dispatch_loop())
            logger.info("Event hub started")

    async def join(self) -> None:
        """Wait until every queued event has been delivered."""
        await self._queue.join()

    async def shutdown(self) -> None:
        """Disconnect all clients, then stop the dispatcher."""
        logger.info("Shutting down event hub...")
        for client in list(self._clients.values()):
            try:
                await client.connection.close(code=1001)
            except Exception as e:
                logger.warning(f"Error closing connection {client.connection.id}: {e}")
        self._clients.clear()
        self._rooms.clear()

        if self._dispatcher is not None:
            self._dispatcher.cancel()
            try:
                await self._dispatcher
            except asyncio.CancelledError:
                pass
            self._dispatcher = None
        logger.info("Event hub shutdown complete")

    # ── membership ──────────────────────────────────────

    def _join_room(self, client: _Client, room: str) -> None:
        client.rooms.add(room)
        self._rooms.setdefault(room, set()).add(client.connection.id)

    def connect(self, connection: Connection) -> None:
        client = _Client(connection)
        self._clients[connection.id] = client
        self._join_room(client, GLOBAL_ROOM)
        self.connection_stats["totalConnections"] += 1
        logger.info(f"Realtime client connected: {connection.id} (Total clients: {len(self._clients)})")

    def authenticate(self, connection: Connection, user) -> None:
        client = self._clients.get(connection.id)
        if client is None:
            return
        client.user = user
        self._join_room(client, user_room(user.id))
        self.connection_stats["totalAuthentications"] += 1
        logger.info(f"User {user.id} authenticated on connection {connection.id}")

    def record_auth_failure(self, connection: Connection, reason: str) -> None:
        self.connection_stats["failedAuthentications"] += 1
        logger.warning(f"Connection {connection.id} failed authentication: {reason}")

    def disconnect(self, connection: Connection) -> None:
        client = self._clients.pop(connection.id, None)
        if client is None:
            return
        for room in client.rooms:
            members = self._rooms.get(room)
            if members is not None:
                members.discard(connection.id)
                if not members:
                    del self._rooms[room]
        self.connection_stats["totalDisconnections"] += 1
        logger.info(f"Realtime client disconnected: {connection.id} (Remaining clients: {len(self._clients)})")

    def user_for(self, connection: Connection):
        client = self._clients.get(connection.id)
        return client.user if client else None

    def room_size(self, room: str) -> int:
        return len(self._rooms.get(room, ()))

    # ── publishing ──────────────────────────────────────

    def publish(self, event_type: str, payload: dict[str, Any], rooms: tuple[str, ...] = (GLOBAL_ROOM,)) -> dict | None:
        message = {
            "eventId": f"{event_type}-{uuid.uuid4().hex}",
            "emittedAt": datetime.now(timezone.utc).isoformat(),
            "type": event_type,
            **payload,
        }
        try:
            self._queue.put_nowait(_Outgoing(rooms, message))
        except asyncio.QueueFull:
            self.connection_stats["droppedEvents"] += 1
            logger.warning(f"Event queue full, dropping {event_type}")
            return None
        logger.debug(f"Queued {event_type} for rooms {rooms}")
        return message

    async def _deliver(self, outgoing: _Outgoing) -> None:
        targets: set[str] = set()
        for room in outgoing.rooms:
            targets |= self._rooms.get(room, set())
        for connection_id in targets:
            client = self._clients.get(connection_id)
            if client is None:
                continue
            try:
                await client.connection.send_json(outgoing.message)
            except Exception as e:
                logger.warning(f"Dropping connection {connection_id} after send failure: {e}")
                self.disconnect(client.connection)

    async def _dispatch_loop(self):
        while True:
            outgoing = await self._queue.get()
            try:
                await self._deliver(outgoing)
            except Exception:
                logger.exception(f"Failed to deliver {outgoing.message.get('type')}")
            finally:
                self._queue.task_done()

    # ── event kinds ─────────────────────────────────────

    def task_created(self, task: dict) -> None:
        self.publish("task.created", {"task": task})

    def task_updated(self, task_id: str, patch: dict) -> None:
        self.publish("task.updated", {"taskId": task_id, "patch": patch})

    def task_deleted(self, task_id: str) -> None:
        self.publish("task.deleted", {"taskId": task_id})

    def task_duplicated(self, source_task_id: str, new_task: dict) -> None:
        self.publish("task.duplicated", {"sourceTaskId": source_task_id, "newTask": new_task})

    def task_assigned(self, task_id: str, assignee_id: str) -> None:
        self.publish("task.assigned", {"taskId": task_id, "assigneeId": assignee_id})

    def star_added(self, task_id: str, user_id: str) -> None:
        self.publish("star.added", {"taskId": task_id}, rooms=(GLOBAL_ROOM, user_room(user_id)))

    def star_removed(self, task_id: str, user_id: str) -> None:
        self.publish("star.removed", {"taskId": task_id}, rooms=(GLOBAL_ROOM, user_room(user_id)))

    def notify_user(self, user_id: str, event_type: str, data: dict) -> None:
        self.publish(event_type, data, rooms=(user_room(user_id),))

    # ── observability ───────────────────────────────────

    def stats(self) -> dict:
        total = self.connection_stats["totalAuthentications"]
        failed = self.connection_stats["failedAuthentications"]
        attempts = total + failed
        authenticated = sum(1 for c in self._clients.values() if c.user is not None)
        return {
            **self.connection_stats,
            "currentConnections": len(self._clients),
            "authenticatedUsers": authenticated,
            "authenticationSuccessRate": f"{total / attempts * 100:.2f}" if attempts else "0.00",
            "queuedEvents": self._queue.qsize(),
        }
