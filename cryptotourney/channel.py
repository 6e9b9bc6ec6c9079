"""
cryptotourney/channel.py - Shared push channel for live tournament events.

The backend multiplexes every tournament room over one WebSocket, so a process
holds exactly one LiveUpdateChannel. It connects lazily on the first
subscribe, then stays up for the life of the process: subscribers come and go,
the connection does not. Only an explicit close() at shutdown tears it down.

Wire format (JSON text frames, both directions):

    client -> server   {"event": "join-tournament",  "data": {"tournamentId": 7}}
                       {"event": "leave-tournament", "data": {"tournamentId": 7}}
    server -> client   {"event": "score-updated",        "data": {"playerAddress": "0x..", "score": 120}}
                       {"event": "tournament-completed", "data": {<Tournament>}}
                       {"event": "tournament-canceled",  "data": {<Tournament>}}

Events are hints. They may arrive before or after a REST snapshot taken at the
same moment; the sync layer treats the REST side as the source of truth.

Usage:
    channel = LiveUpdateChannel("ws://localhost:3000/ws")
    sub = await channel.subscribe(7, on_score_update=print)
    ...
    await sub.unsubscribe()
"""

import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Callable

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

logger = logging.getLogger(__name__)

JOIN_EVENT = "join-tournament"
LEAVE_EVENT = "leave-tournament"
SCORE_UPDATED = "score-updated"
TOURNAMENT_COMPLETED = "tournament-completed"
TOURNAMENT_CANCELED = "tournament-canceled"

SERVER_EVENTS = (SCORE_UPDATED, TOURNAMENT_COMPLETED, TOURNAMENT_CANCELED)

DEFAULT_HEADERS = {"ngrok-skip-browser-warning": "true"}

EventCallback = Callable[[dict[str, Any]], None]


def _event_tournament_id(event: str, data: dict[str, Any]) -> int | None:
    """Which tournament an event is about, if the payload says."""
    raw = data.get("tournamentId")
    if raw is None and event != SCORE_UPDATED:
        raw = data.get("id")
    if raw is None:
        return None
    try:
        return int(raw)
    except (TypeError, ValueError):
        return None


@dataclass(eq=False)
class Subscription:
    """One subscriber's interest in one tournament.

    unsubscribe() is idempotent and safe after the connection has dropped.
    """

    tournament_id: int
    callbacks: dict[str, EventCallback]
    channel: "LiveUpdateChannel" = field(repr=False)
    active: bool = True

    async def unsubscribe(self) -> None:
        await self.channel._unsubscribe(self)


class LiveUpdateChannel:
    """Process-wide push connection with per-tournament subscriptions.

    Args:
        url: WebSocket endpoint, e.g. "ws://localhost:3000/ws".
        connect: Connection factory (websockets.connect; tests inject a fake).
        reconnect_delay: Constant seconds between reconnect attempts.
    """

    def __init__(
        self,
        url: str,
        connect: Callable = websockets.connect,
        reconnect_delay: float = 1.0,
        open_timeout: float = 10.0,
    ):
        self.url = url
        self.reconnect_delay = reconnect_delay
        self.open_timeout = open_timeout
        self._connect = connect
        self._ws = None
        self._reader: asyncio.Task | None = None
        self._start_lock = asyncio.Lock()
        self._subscriptions: dict[int, list[Subscription]] = {}
        self._closed = False

    @property
    def connected(self) -> bool:
        return self._ws is not None

    @property
    def started(self) -> bool:
        return self._reader is not None

    def subscriber_count(self, tournament_id: int) -> int:
        return len(self._subscriptions.get(tournament_id, []))

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Open the connection and start the reader. Runs once per channel.

        A failed first connect is not an error: the reader keeps retrying in
        the background and re-joins rooms once it gets through.
        """
        async with self._start_lock:
            if self._reader is not None or self._closed:
                return
            await self._open()
            self._reader = asyncio.create_task(self._run())

    async def close(self) -> None:
        """Shut the channel down for good (process exit only)."""
        self._closed = True
        if self._reader is not None:
            self._reader.cancel()
            try:
                await self._reader
            except asyncio.CancelledError:
                pass
        if self._ws is not None:
            try:
                await self._ws.close()
            except (ConnectionClosed, OSError):
                pass
            self._ws = None
        logger.info("Push channel closed")

    async def _open(self) -> bool:
        try:
            self._ws = await self._connect(
                self.url,
                additional_headers=DEFAULT_HEADERS,
                open_timeout=self.open_timeout,
            )
        except (OSError, WebSocketException, asyncio.TimeoutError) as e:
            logger.warning(f"Cannot reach tournament server at {self.url}: {e}")
            self._ws = None
            return False
        logger.info("Connected to tournament server")
        return True

    async def _run(self) -> None:
        while not self._closed:
            if self._ws is None:
                if not await self._open():
                    await asyncio.sleep(self.reconnect_delay)
                    continue
                for tournament_id in list(self._subscriptions):
                    await self._emit(JOIN_EVENT, {"tournamentId": tournament_id})

            try:
                async for raw in self._ws:
                    self._handle_raw(raw)
            except ConnectionClosed as e:
                logger.debug(f"Push connection closed: {e}")

            self._ws = None
            if not self._closed:
                logger.warning("Disconnected from tournament server, reconnecting...")
                await asyncio.sleep(self.reconnect_delay)

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    async def subscribe(
        self,
        tournament_id: int,
        on_score_update: EventCallback | None = None,
        on_tournament_complete: EventCallback | None = None,
        on_tournament_canceled: EventCallback | None = None,
    ) -> Subscription:
        """Register callbacks for one tournament's events.

        The first subscriber for a tournament makes the server join its room;
        later subscribers share it.
        """
        await self.start()

        callbacks = {
            SCORE_UPDATED: on_score_update,
            TOURNAMENT_COMPLETED: on_tournament_complete,
            TOURNAMENT_CANCELED: on_tournament_canceled,
        }
        sub = Subscription(
            tournament_id=tournament_id,
            callbacks={event: cb for event, cb in callbacks.items() if cb is not None},
            channel=self,
        )

        subs = self._subscriptions.setdefault(tournament_id, [])
        first = not subs
        subs.append(sub)
        if first:
            await self._emit(JOIN_EVENT, {"tournamentId": tournament_id})
        logger.debug(f"Subscribed to tournament {tournament_id} ({len(subs)} subscriber(s))")
        return sub

    async def _unsubscribe(self, sub: Subscription) -> None:
        if not sub.active:
            return
        sub.active = False

        subs = self._subscriptions.get(sub.tournament_id, [])
        if sub in subs:
            subs.remove(sub)
        if not subs:
            self._subscriptions.pop(sub.tournament_id, None)
            await self._emit(LEAVE_EVENT, {"tournamentId": sub.tournament_id})
        logger.debug(f"Unsubscribed from tournament {sub.tournament_id}")

    async def _emit(self, event: str, data: dict[str, Any]) -> None:
        """Best-effort send. Rooms are re-joined on reconnect, so a lost send is fine."""
        ws = self._ws
        if ws is None:
            logger.debug(f"Not connected; deferring {event} {data}")
            return
        try:
            await ws.send(json.dumps({"event": event, "data": data}))
        except (ConnectionClosed, OSError) as e:
            logger.debug(f"Failed to send {event}: {e}")

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def _handle_raw(self, raw: str | bytes) -> None:
        try:
            msg = json.loads(raw)
        except json.JSONDecodeError:
            logger.debug("Ignoring non-JSON push frame")
            return
        if not isinstance(msg, dict):
            return
        self.dispatch(msg.get("event"), msg.get("data"))

    def dispatch(self, event: str | None, data: Any) -> int:
        """Deliver one server event to the subscribers it concerns.

        Events naming a tournament go to that tournament's subscribers;
        events that don't go to every subscriber. Returns the number of
        callbacks invoked.
        """
        if event not in SERVER_EVENTS or not isinstance(data, dict):
            logger.debug(f"Ignoring push event {event!r}")
            return 0

        tournament_id = _event_tournament_id(event, data)
        if tournament_id is not None:
            targets = list(self._subscriptions.get(tournament_id, []))
        else:
            targets = [sub for subs in self._subscriptions.values() for sub in subs]

        delivered = 0
        for sub in targets:
            callback = sub.callbacks.get(event)
            if callback is None or not sub.active:
                continue
            try:
                callback(data)
                delivered += 1
            except Exception as e:
                logger.error(f"Subscriber for tournament {sub.tournament_id} failed on {event}: {e}")
        return delivered
