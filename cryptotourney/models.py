"""
cryptotourney/models.py - Tournament and player values as the client caches them.

All values are frozen. The backend owns the truth; the client holds
eventually-consistent copies and replaces them wholesale on every update
(`dataclasses.replace`), so a Tournament handed to one observer never changes
underneath another.

Wire format is the backend's camelCase JSON:

    {"id": 7, "name": "Friday Blitz", "entryFee": "10000000000000000",
     "maxPlayers": 10, "currentPlayers": 9, "lobbyCloseTime": 1760000000,
     "startTime": 1760000600, "endTime": 1760004200, "gameType": 0,
     "status": 1, "winners": null}
"""

import logging
import time
from dataclasses import dataclass, replace
from enum import IntEnum
from typing import Any

from .errors import InvalidTransition

logger = logging.getLogger(__name__)


# ============================================================================
# Status lifecycle
# ============================================================================


class TournamentStatus(IntEnum):
    """Matches the contract's enum ordinals."""

    CREATED = 0
    ACTIVE = 1
    COMPLETED = 2
    CANCELED = 3

    @property
    def is_terminal(self) -> bool:
        return self in (TournamentStatus.COMPLETED, TournamentStatus.CANCELED)

    @classmethod
    def parse(cls, value: Any) -> "TournamentStatus":
        """Accept the ordinal (int or numeric string) or the name."""
        if isinstance(value, TournamentStatus):
            return value
        if isinstance(value, bool):
            raise ValueError(f"Invalid tournament status: {value!r}")
        if isinstance(value, int):
            return cls(value)
        if isinstance(value, str):
            text = value.strip()
            if text.isdigit():
                return cls(int(text))
            try:
                return cls[text.upper()]
            except KeyError:
                pass
        raise ValueError(f"Invalid tournament status: {value!r}")


_STATUS_ORDER = {
    TournamentStatus.CREATED: 0,
    TournamentStatus.ACTIVE: 1,
    TournamentStatus.COMPLETED: 2,
    TournamentStatus.CANCELED: 2,
}


def can_transition(current: TournamentStatus, new: TournamentStatus) -> bool:
    """True if `new` is `current` or lies further along the lifecycle.

    CREATED -> ACTIVE -> {COMPLETED, CANCELED}. Steps may be skipped when an
    intermediate status was never observed. A terminal status never changes.
    """
    if new == current:
        return True
    if current.is_terminal:
        return False
    return _STATUS_ORDER[new] > _STATUS_ORDER[current]


# ============================================================================
# Tournament
# ============================================================================


def _to_int(value: Any, name: str) -> int:
    if isinstance(value, bool) or value is None:
        raise ValueError(f"{name} must be an integer, got {value!r}")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValueError(f"{name} must be an integer, got {value!r}")


@dataclass(frozen=True)
class Tournament:
    """A scheduled competitive event, as last seen from the backend."""

    id: int
    name: str
    entry_fee: int  # wei; string-encoded on the wire
    max_players: int
    current_players: int
    lobby_close_time: int  # epoch seconds
    start_time: int
    end_time: int
    status: TournamentStatus = TournamentStatus.CREATED
    game_type: int = 0
    winners: tuple[str, ...] | None = None
    created_at: str | None = None
    updated_at: str | None = None

    def __post_init__(self):
        if self.entry_fee < 0:
            raise ValueError(f"Tournament {self.id}: negative entry fee")
        if self.max_players < 0 or self.current_players < 0:
            raise ValueError(f"Tournament {self.id}: negative player count")
        if self.current_players > self.max_players:
            raise ValueError(
                f"Tournament {self.id}: {self.current_players} players exceeds max {self.max_players}"
            )
        if not (self.lobby_close_time <= self.start_time <= self.end_time):
            raise ValueError(f"Tournament {self.id}: lobby close, start and end times out of order")
        if self.winners and self.status != TournamentStatus.COMPLETED:
            raise ValueError(f"Tournament {self.id}: winners set while {self.status.name}")

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Tournament":
        """Parse a backend record. Raises ValueError on missing or inconsistent fields."""
        if not isinstance(data, dict):
            raise ValueError(f"Tournament record must be an object, got {type(data).__name__}")
        try:
            status = TournamentStatus.parse(data.get("status", TournamentStatus.CREATED))
            winners = data.get("winners")
            # Only a completed tournament has winners; ignore stray lists
            if status != TournamentStatus.COMPLETED or not winners:
                winners = None
            else:
                winners = tuple(str(w) for w in winners)
            return cls(
                id=_to_int(data.get("id"), "id"),
                name=str(data.get("name") or ""),
                entry_fee=_to_int(data.get("entryFee", 0), "entryFee"),
                max_players=_to_int(data.get("maxPlayers"), "maxPlayers"),
                current_players=_to_int(data.get("currentPlayers", 0), "currentPlayers"),
                lobby_close_time=_to_int(data.get("lobbyCloseTime"), "lobbyCloseTime"),
                start_time=_to_int(data.get("startTime"), "startTime"),
                end_time=_to_int(data.get("endTime"), "endTime"),
                status=status,
                game_type=_to_int(data.get("gameType", 0), "gameType"),
                winners=winners,
                created_at=data.get("createdAt"),
                updated_at=data.get("updatedAt"),
            )
        except TypeError as e:
            raise ValueError(f"Malformed tournament record: {e}")

    # --- Derived state ---

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def is_full(self) -> bool:
        return self.current_players >= self.max_players

    def is_lobby_open(self, now: float | None = None) -> bool:
        now = time.time() if now is None else now
        return now < self.lobby_close_time

    def has_started(self, now: float | None = None) -> bool:
        now = time.time() if now is None else now
        return now > self.start_time

    def has_ended(self, now: float | None = None) -> bool:
        now = time.time() if now is None else now
        return now > self.end_time

    # --- Updates (each returns a new value) ---

    def with_status(
        self, status: TournamentStatus, winners: tuple[str, ...] | list[str] | None = None
    ) -> "Tournament":
        """Move to `status`, enforcing the one-way lifecycle.

        Winners are only kept when the new status is COMPLETED. Re-applying the
        current terminal status is allowed so a late completion event can still
        fill in winners.
        """
        if not can_transition(self.status, status):
            raise InvalidTransition(self.status, status)
        if status == TournamentStatus.COMPLETED:
            new_winners = tuple(winners) if winners else self.winners
        else:
            new_winners = None
        return replace(self, status=status, winners=new_winners)

    def with_player_count(self, current_players: int) -> "Tournament":
        if self.is_terminal:
            raise ValueError(f"Tournament {self.id} is {self.status.name}; player count is frozen")
        return replace(self, current_players=current_players)

    def reconcile(self, fresh: "Tournament") -> "Tournament":
        """Pick the value to keep when a re-fetched snapshot arrives.

        The fresh snapshot wins unless it would move the status backwards
        (a stale read racing a push event), in which case the cached value is
        kept until the next poll.
        """
        if fresh.id != self.id:
            raise ValueError(f"Cannot reconcile tournament {self.id} with {fresh.id}")
        if can_transition(self.status, fresh.status):
            return fresh
        logger.warning(
            f"Ignoring stale snapshot for tournament {self.id}: "
            f"{self.status.name} -> {fresh.status.name}"
        )
        return self


# ============================================================================
# Players
# ============================================================================


@dataclass(frozen=True)
class Player:
    """One participant's standing in a tournament."""

    address: str
    username: str | None = None
    score: int = 0
    rank: int | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Player":
        if not isinstance(data, dict) or not data.get("address"):
            raise ValueError(f"Malformed player record: {data!r}")
        rank = data.get("rank")
        return cls(
            address=str(data["address"]),
            username=data.get("username") or None,
            score=_to_int(data.get("score", 0), "score"),
            rank=_to_int(rank, "rank") if rank is not None else None,
        )

    @property
    def display_name(self) -> str:
        if self.username:
            return self.username
        return f"{self.address[:6]}...{self.address[-4:]}"

    def with_score(self, score: int) -> "Player":
        return replace(self, score=score)


@dataclass(frozen=True)
class TournamentPlayers:
    """Player board snapshot from GET /api/tournaments/{id}/players."""

    players: tuple[Player, ...] = ()
    last_updated: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "TournamentPlayers":
        if not data:
            return cls()
        if not isinstance(data, dict):
            logger.warning(f"Ignoring malformed player board: {type(data).__name__}")
            return cls()
        players = []
        for raw in data.get("players") or []:
            try:
                players.append(Player.from_dict(raw))
            except ValueError as e:
                logger.warning(f"Skipping player record: {e}")
        return cls(players=tuple(players), last_updated=data.get("lastUpdated"))

    def ranked(self) -> list[Player]:
        """Players ordered by score, highest first."""
        return sorted(self.players, key=lambda p: p.score, reverse=True)


@dataclass(frozen=True)
class JoinReceipt:
    """Backend acknowledgement of a join (POST /api/tournaments/{id}/join)."""

    tournament_id: int
    player_address: str
    tx_hash: str | None = None
    current_players: int | None = None
    max_players: int | None = None
    message: str = ""

    @classmethod
    def from_response(
        cls, response: dict[str, Any], tournament_id: int, player_address: str
    ) -> "JoinReceipt":
        """Parse the join response, falling back to the request's own id/address."""
        data = response.get("data") or {}
        current = data.get("currentPlayers")
        maximum = data.get("maxPlayers")
        return cls(
            tournament_id=_to_int(data.get("tournamentId", tournament_id), "tournamentId"),
            player_address=str(data.get("playerAddress") or player_address),
            tx_hash=data.get("txHash"),
            current_players=_to_int(current, "currentPlayers") if current is not None else None,
            max_players=_to_int(maximum, "maxPlayers") if maximum is not None else None,
            message=response.get("message") or "",
        )
