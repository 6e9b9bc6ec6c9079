"""
cryptotourney/sync.py - Keeps the local view of tournaments in step with the backend.

Two sources feed the view:

    REST snapshots   authoritative, re-read every poll_interval (30s) for the
                     list and on mount / on completion for a player board
    push events      fast hints from the LiveUpdateChannel

TournamentBoard owns the list and the poll loop. TournamentView owns one
tournament's player board while something is watching it. Every update
replaces the cached Tournament value instead of editing it in place.

Poll and push can race: a list refetch issued before a push event but
finishing after it can briefly bring back an older value. The next poll or
event corrects it, so staleness is bounded by the poll interval. The one
thing a stale snapshot is never allowed to do is move a status backwards.
"""

import asyncio
import logging
import time
from typing import Callable

from .channel import LiveUpdateChannel, Subscription
from .contract import TournamentContract
from .errors import ContractError, InvalidTransition, JoinNotAllowed, RequestError
from .models import JoinReceipt, Player, Tournament, TournamentStatus
from .session import WalletSessionManager
from .tournament import TournamentService

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 30.0

OBSERVED_STATUSES = (TournamentStatus.ACTIVE, TournamentStatus.COMPLETED)


class TournamentView:
    """Live player board for one tournament.

    mount() loads the players and subscribes to push events; unmount()
    unsubscribes. Both are safe to call repeatedly.
    """

    def __init__(
        self,
        tournament: Tournament,
        service: TournamentService,
        channel: LiveUpdateChannel,
    ):
        self.service = service
        self.channel = channel
        self.mounted = False
        self._tournament = tournament
        self._players: tuple[Player, ...] = ()
        self._subscription: Subscription | None = None
        self._observing = False
        self._refresh_task: asyncio.Task | None = None
        self._observers: list[Callable[["TournamentView"], None]] = []

    @property
    def tournament(self) -> Tournament:
        return self._tournament

    @property
    def players(self) -> tuple[Player, ...]:
        return self._players

    @property
    def subscribed(self) -> bool:
        return self._subscription is not None

    def ranked_players(self) -> list[Player]:
        return sorted(self._players, key=lambda p: p.score, reverse=True)

    def should_observe(self) -> bool:
        return self._tournament.status in OBSERVED_STATUSES or bool(self._players)

    def on_change(self, observer: Callable[["TournamentView"], None]) -> None:
        self._observers.append(observer)

    def _notify(self) -> None:
        for observer in list(self._observers):
            try:
                observer(self)
            except Exception as e:
                logger.error(f"View observer failed for tournament {self._tournament.id}: {e}")

    # ------------------------------------------------------------------
    # Mount / unmount
    # ------------------------------------------------------------------

    async def mount(self) -> None:
        self.mounted = True
        await self._observe()

    async def _observe(self) -> None:
        if self._observing or self._subscription is not None:
            return
        if not self.mounted or not self.should_observe():
            return

        # Set across both awaits; a concurrent mount() or poll returns early
        self._observing = True
        try:
            await self.refresh_players()
            if not self.mounted:
                return
            subscription = await self.channel.subscribe(
                self._tournament.id,
                on_score_update=self._on_score_update,
                on_tournament_complete=self._on_tournament_complete,
                on_tournament_canceled=self._on_tournament_canceled,
            )
        finally:
            self._observing = False

        if not self.mounted:
            # unmount() ran while the room join was in flight
            await subscription.unsubscribe()
            return
        self._subscription = subscription

    async def unmount(self) -> None:
        self.mounted = False
        if self._refresh_task is not None and not self._refresh_task.done():
            self._refresh_task.cancel()
        self._refresh_task = None
        subscription, self._subscription = self._subscription, None
        if subscription is not None:
            await subscription.unsubscribe()

    async def settle(self) -> None:
        """Wait for a pending player refetch, if any."""
        task = self._refresh_task
        if task is not None:
            try:
                await task
            except asyncio.CancelledError:
                pass

    # ------------------------------------------------------------------
    # Snapshot reads
    # ------------------------------------------------------------------

    async def refresh_players(self) -> tuple[Player, ...]:
        """Reload the board from REST. A failed read shows an empty board."""
        try:
            result = await self.service.get_players(self._tournament.id)
            players = result.players
        except RequestError as e:
            logger.error(f"Failed to fetch players for tournament {self._tournament.id}: {e}")
            players = ()
        self._players = players
        self._notify()
        return players

    async def apply_snapshot(self, fresh: Tournament) -> None:
        """Take a re-fetched Tournament from the board's poll."""
        updated = self._tournament.reconcile(fresh)
        if updated is self._tournament:
            return
        self._tournament = updated
        self._notify()
        # A tournament that just went live starts being observed
        await self._observe()

    # ------------------------------------------------------------------
    # Push events
    # ------------------------------------------------------------------

    def _on_score_update(self, data: dict) -> None:
        if self._tournament.is_terminal:
            logger.debug(f"Ignoring score update for finished tournament {self._tournament.id}")
            return
        address = str(data.get("playerAddress") or "").lower()
        try:
            score = int(data.get("score"))
        except (TypeError, ValueError):
            logger.debug(f"Ignoring malformed score update: {data!r}")
            return

        if not any(p.address.lower() == address for p in self._players):
            # Joins are not pushed, so an unknown address is never inserted
            return
        self._players = tuple(
            p.with_score(score) if p.address.lower() == address else p for p in self._players
        )
        self._notify()

    def _apply_status(self, data: dict, default: TournamentStatus) -> bool:
        try:
            status = TournamentStatus.parse(data.get("status", default))
            self._tournament = self._tournament.with_status(status, data.get("winners"))
        except (InvalidTransition, ValueError) as e:
            logger.warning(f"Ignoring status event for tournament {self._tournament.id}: {e}")
            return False
        self._notify()
        return True

    def _on_tournament_complete(self, data: dict) -> None:
        if not self._apply_status(data, TournamentStatus.COMPLETED):
            return
        # Final scores come from the follow-up read, not the event
        if self._refresh_task is not None and not self._refresh_task.done():
            self._refresh_task.cancel()
        self._refresh_task = asyncio.get_running_loop().create_task(self.refresh_players())

    def _on_tournament_canceled(self, data: dict) -> None:
        self._apply_status({"status": data.get("status", TournamentStatus.CANCELED)}, TournamentStatus.CANCELED)


class TournamentBoard:
    """The tournament list, its poll loop, and the join flow.

    Args:
        service: Snapshot fetcher.
        channel: Shared push channel handed to every view.
        session: Wallet session (join/enter need a connected address).
        contract: On-chain entry-fee contract (None: joining disabled).
        poll_interval: Seconds between list refetches.
        clock: Returns epoch seconds (tests pin it).
    """

    def __init__(
        self,
        service: TournamentService,
        channel: LiveUpdateChannel,
        session: WalletSessionManager,
        contract: TournamentContract | None = None,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        clock: Callable[[], float] = time.time,
    ):
        self.service = service
        self.channel = channel
        self.session = session
        self.contract = contract
        self.poll_interval = poll_interval
        self.clock = clock
        self._tournaments: dict[int, Tournament] = {}
        self._views: dict[int, TournamentView] = {}
        self._poll_task: asyncio.Task | None = None
        self._observers: list[Callable[[list[Tournament]], None]] = []

    @property
    def tournaments(self) -> list[Tournament]:
        return list(self._tournaments.values())

    def get(self, tournament_id: int) -> Tournament | None:
        return self._tournaments.get(tournament_id)

    def on_change(self, observer: Callable[[list[Tournament]], None]) -> None:
        self._observers.append(observer)

    def _notify(self) -> None:
        tournaments = self.tournaments
        for observer in list(self._observers):
            try:
                observer(tournaments)
            except Exception as e:
                logger.error(f"Board observer failed: {e}")

    # ------------------------------------------------------------------
    # Polling
    # ------------------------------------------------------------------

    async def refresh(self) -> list[Tournament]:
        """Re-read the full list and reconcile it into the cache."""
        fresh = await self.service.list_all()
        if not fresh and self._tournaments:
            # list_all degrades to [] when the backend is down; keep what we have
            logger.debug("Empty tournament list, keeping cached board")
            return self.tournaments

        merged: dict[int, Tournament] = {}
        for tournament in fresh:
            cached = self._tournaments.get(tournament.id)
            merged[tournament.id] = cached.reconcile(tournament) if cached else tournament
        self._tournaments = merged

        for tournament_id, view in list(self._views.items()):
            if tournament_id in merged:
                await view.apply_snapshot(merged[tournament_id])

        self._notify()
        return self.tournaments

    async def _poll_loop(self) -> None:
        while True:
            try:
                await self.refresh()
            except Exception as e:
                logger.error(f"Tournament poll error: {e}")
            await asyncio.sleep(self.poll_interval)

    def start(self) -> None:
        """Start polling (first refresh runs immediately)."""
        if self._poll_task is None:
            self._poll_task = asyncio.create_task(self._poll_loop())

    async def stop(self) -> None:
        task, self._poll_task = self._poll_task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        for view in list(self._views.values()):
            await view.unmount()
        self._views.clear()

    # ------------------------------------------------------------------
    # Views
    # ------------------------------------------------------------------

    async def watch(self, tournament_id: int) -> TournamentView:
        """Mount (or reuse) the live view of a cached tournament."""
        view = self._views.get(tournament_id)
        if view is None:
            tournament = self._tournaments.get(tournament_id)
            if tournament is None:
                raise KeyError(f"Unknown tournament {tournament_id}")
            view = TournamentView(tournament, self.service, self.channel)
            view.on_change(self._on_view_change)
            self._views[tournament_id] = view
        await view.mount()
        return view

    def _on_view_change(self, view: TournamentView) -> None:
        """Carry status pushed to a view back into the list cache."""
        pushed = view.tournament
        cached = self._tournaments.get(pushed.id)
        if cached is None or (cached.status, cached.winners) == (pushed.status, pushed.winners):
            return
        try:
            updated = cached.with_status(pushed.status, pushed.winners)
        except InvalidTransition:
            return
        self._tournaments[updated.id] = updated
        self._notify()

    async def unwatch(self, tournament_id: int) -> None:
        view = self._views.pop(tournament_id, None)
        if view is not None:
            await view.unmount()

    # ------------------------------------------------------------------
    # Actions
    # ------------------------------------------------------------------

    def check_can_join(self, tournament_id: int) -> Tournament:
        """Client-side join rules. Raises JoinNotAllowed; makes no network call."""
        if self.session.session.address is None:
            raise JoinNotAllowed("Wallet not connected")
        tournament = self._tournaments.get(tournament_id)
        if tournament is None:
            raise JoinNotAllowed("Tournament not found")
        now = self.clock()
        if tournament.status == TournamentStatus.CANCELED:
            raise JoinNotAllowed("Tournament Canceled")
        if tournament.is_terminal or tournament.has_started(now):
            raise JoinNotAllowed("Tournament Already Started")
        if not tournament.is_lobby_open(now):
            raise JoinNotAllowed("Registration Closed")
        if tournament.is_full:
            raise JoinNotAllowed("Tournament Full")
        return tournament

    async def join(self, tournament_id: int) -> JoinReceipt:
        """Pay the entry fee on-chain, then register the join with the backend.

        Raises:
            JoinNotAllowed: a client-side rule failed (nothing was sent).
            ChainMismatch: the wallet is on the wrong network.
            UserRejection / ContractError: the on-chain payment failed.
            RequestError: the backend refused or could not be reached.
        """
        tournament = self.check_can_join(tournament_id)
        if self.contract is None:
            raise ContractError("No tournament contract configured")
        self.session.require_chain()

        address = self.session.session.address
        await self.contract.join_tournament(tournament.id, tournament.entry_fee, address)
        receipt = await self.service.join(tournament.id, address)

        if receipt.current_players is not None:
            try:
                updated = tournament.with_player_count(receipt.current_players)
            except ValueError as e:
                logger.warning(f"Ignoring join receipt player count: {e}")
            else:
                self._tournaments[tournament.id] = updated
                view = self._views.get(tournament.id)
                if view is not None:
                    await view.apply_snapshot(updated)
                self._notify()

        await self.refresh()
        return receipt

    async def enter(self, tournament_id: int) -> bool:
        """Enter the running game for the connected wallet."""
        address = self.session.session.address
        if address is None:
            raise JoinNotAllowed("Wallet not connected")
        entered = await self.service.enter(tournament_id, address)
        if entered:
            logger.info(f"Entered tournament {tournament_id} game")
        return entered

    async def register(self, username: str) -> dict:
        """Register the connected wallet as a player on-chain."""
        address = self.session.session.address
        if address is None:
            raise JoinNotAllowed("Wallet not connected")
        if self.contract is None:
            raise ContractError("No tournament contract configured")
        return await self.contract.register_player(username, address)
