import asyncio
import logging
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Protocol, Set


logger = logging.getLogger(__name__)


class Connection(Protocol):

    async def send_json(self, data: Any) -> None: ...


class ConnectionManager:
    """Process-local registry of live sessions.

    Maps user ids to their open connections and conversation rooms to the
    connections that joined them. Nothing here is persisted; a restart
    starts empty.
    """

    def __init__(self) -> None:
        self.active_connections: Dict[str, Set[Connection]] = {}
        self.rooms: Dict[str, Set[Connection]] = {}
        self._lock = asyncio.Lock()
        self._pending: Set["asyncio.Task[None]"] = set()
        self._presence_tail: Dict[str, "asyncio.Task[None]"] = {}

    async def register(self, user_id: str, connection: Connection) -> bool:
        """Add a connection; returns True when the user just came online.

        The registry lock covers only the mutation. The new connection gets
        its `users:online` snapshot directly; the `user:online` broadcast to
        everyone else runs in the background so a stalled socket cannot hold
        up other users.
        """
        async with self._lock:
            connections = self.active_connections.setdefault(user_id, set())
            first = not connections
            connections.add(connection)
            others = [uid for uid in self.active_connections if uid != user_id]
            if first:
                self._announce(user_id, "user:online", self._connections_except(user_id))
        await self._send(connection, "users:online", {"user_ids": others})
        if first:
            logger.info("User %s online", user_id)
        return first

    async def unregister(self, user_id: str, connection: Connection) -> bool:
        """Drop a connection; returns True when it was the user's last one."""
        async with self._lock:
            for room in list(self.rooms):
                self._leave(room, connection)
            connections = self.active_connections.get(user_id)
            if not connections or connection not in connections:
                return False
            connections.discard(connection)
            if connections:
                return False
            del self.active_connections[user_id]
            self._announce(user_id, "user:offline", self._connections_except(user_id))
        logger.info("User %s offline", user_id)
        return True

    async def drain(self) -> None:
        """Wait until every pending presence broadcast has been delivered."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def _connections_except(self, user_id: str) -> List[Connection]:
        return [
            conn
            for uid, conns in self.active_connections.items()
            if uid != user_id
            for conn in conns
        ]

    def _announce(self, user_id: str, event: str, targets: List[Connection]) -> None:
        # chained per user so a user's online/offline events never overtake each other
        previous = self._presence_tail.get(user_id)
        task = asyncio.get_running_loop().create_task(
            self._deliver_after(previous, targets, event, {"user_id": user_id})
        )
        self._presence_tail[user_id] = task
        self._pending.add(task)
        task.add_done_callback(lambda t: self._presence_done(user_id, t))

    async def _deliver_after(self, previous: Optional["asyncio.Task[None]"], targets: List[Connection], event: str, data: Any) -> None:
        if previous is not None:
            await asyncio.gather(previous, return_exceptions=True)
        # one stalled watcher must not delay the others
        await asyncio.gather(*(self._send(conn, event, data) for conn in targets))

    def _presence_done(self, user_id: str, task: "asyncio.Task[None]") -> None:
        self._pending.discard(task)
        if self._presence_tail.get(user_id) is task:
            del self._presence_tail[user_id]

    def is_online(self, user_id: str) -> bool:
        return bool(self.active_connections.get(user_id))

    def handles_for(self, user_id: str) -> FrozenSet[Connection]:
        return frozenset(self.active_connections.get(user_id, ()))

    def online_user_ids(self) -> list[str]:
        return list(self.active_connections)

    def join(self, room: str, connection: Connection) -> None:
        self.rooms.setdefault(room, set()).add(connection)

    def leave(self, room: str, connection: Connection) -> None:
        self._leave(room, connection)

    def in_room(self, room: str, connection: Connection) -> bool:
        return connection in self.rooms.get(room, ())

    def _leave(self, room: str, connection: Connection) -> None:
        members = self.rooms.get(room)
        if members is None:
            return
        members.discard(connection)
        if not members:
            del self.rooms[room]

    async def emit_to_room(self, room: str, event: str, data: Any, exclude: Optional[Connection] = None) -> None:
        targets = [c for c in list(self.rooms.get(room, ())) if c is not exclude]
        await self._fanout(targets, event, data)

    async def emit_to_user(self, user_id: str, event: str, data: Any) -> None:
        await self._fanout(list(self.active_connections.get(user_id, ())), event, data)

    async def emit_to_room_and_user(self, room: str, user_id: str, event: str, data: Any) -> None:
        """Deliver once to every room member and every connection of user_id."""
        targets = set(self.rooms.get(room, ())) | set(self.active_connections.get(user_id, ()))
        await self._fanout(list(targets), event, data)

    async def emit_to_connection(self, connection: Connection, event: str, data: Any) -> None:
        await self._send(connection, event, data)

    async def _fanout(self, targets: Iterable[Connection], event: str, data: Any) -> None:
        for conn in targets:
            await self._send(conn, event, data)

    async def _send(self, connection: Connection, event: str, data: Any) -> None:
        try:
            await connection.send_json({"type": event, "data": data})
        except Exception as exc:
            # a dead socket must not stop delivery to the others
            logger.warning("Dropping %s event for a closed connection: %s", event, exc)
