"""
cryptotourney/tournament.py - Tournament snapshots over the REST API.

List reads never raise: a failing backend yields an empty list so the caller
can keep showing something. Single-entity reads the caller acts on
(status, players) and every write (join, enter) propagate failures.
"""

import logging
from typing import Any

from .errors import RemoteRejection, RequestError
from .executor import RequestExecutor
from .models import JoinReceipt, Tournament, TournamentPlayers

logger = logging.getLogger(__name__)


def _parse_tournament_list(response: Any) -> list[Tournament]:
    if not isinstance(response, dict) or not isinstance(response.get("data"), list):
        return []
    tournaments = []
    for raw in response["data"]:
        try:
            tournaments.append(Tournament.from_dict(raw))
        except ValueError as e:
            logger.warning(f"Skipping malformed tournament record: {e}")
    return tournaments


class TournamentService:
    """Thin wrappers over the executor for each tournament endpoint."""

    def __init__(self, executor: RequestExecutor):
        self.executor = executor

    async def list_all(self) -> list[Tournament]:
        """GET /api/tournaments. Empty list on any failure."""
        try:
            response = await self.executor.execute("/api/tournaments")
        except RequestError as e:
            logger.error(f"Failed to fetch tournaments: {e}")
            return []
        return _parse_tournament_list(response)

    async def list_active(self) -> list[Tournament]:
        """GET /api/tournaments/active. Empty list on any failure."""
        try:
            response = await self.executor.execute("/api/tournaments/active")
        except RequestError as e:
            logger.error(f"Failed to fetch active tournaments: {e}")
            return []
        return _parse_tournament_list(response)

    async def get_by_id(self, tournament_id: int) -> Tournament | None:
        """GET /api/tournaments/{id}. None on failure or missing data."""
        try:
            response = await self.executor.execute(f"/api/tournaments/{tournament_id}")
        except RequestError as e:
            logger.error(f"Failed to fetch tournament {tournament_id}: {e}")
            return None
        if not isinstance(response, dict) or not response.get("data"):
            return None
        try:
            return Tournament.from_dict(response["data"])
        except ValueError as e:
            logger.warning(f"Malformed tournament {tournament_id}: {e}")
            return None

    async def get_status(self, tournament_id: int) -> Tournament:
        """GET /api/tournaments/{id}/status.

        Raises:
            RequestError: backend unreachable, rejected, or reported failure.
        """
        response = await self.executor.execute(f"/api/tournaments/{tournament_id}/status")
        if not isinstance(response, dict) or not response.get("success"):
            raise RemoteRejection("Failed to fetch tournament status")
        try:
            return Tournament.from_dict(response.get("data"))
        except ValueError as e:
            raise RemoteRejection(f"Failed to fetch tournament status: {e}")

    async def get_players(self, tournament_id: int) -> TournamentPlayers:
        """GET /api/tournaments/{id}/players.

        Raises:
            RequestError: backend unreachable, rejected, or reported failure.
        """
        response = await self.executor.execute(f"/api/tournaments/{tournament_id}/players")
        if not isinstance(response, dict) or not response.get("success"):
            raise RemoteRejection("Failed to fetch tournament players")
        data = response.get("data")
        if data is not None and not isinstance(data, dict):
            raise RemoteRejection("Malformed tournament players response")
        return TournamentPlayers.from_dict(data)

    async def join(self, tournament_id: int, player_address: str) -> JoinReceipt:
        """POST /api/tournaments/{id}/join after the on-chain payment went through.

        One call is one user intent; retries only happen inside the executor.
        """
        response = await self.executor.execute(
            f"/api/tournaments/{tournament_id}/join",
            "POST",
            {"playerAddress": player_address},
        )
        if not isinstance(response, dict):
            raise RemoteRejection("Failed to join tournament")
        if not response.get("success"):
            raise RemoteRejection(response.get("message") or "Failed to join tournament")
        receipt = JoinReceipt.from_response(response, tournament_id, player_address)
        logger.info(
            f"Joined tournament {tournament_id} as {player_address} "
            f"({receipt.current_players}/{receipt.max_players})"
        )
        return receipt

    async def enter(self, tournament_id: int, player_address: str) -> bool:
        """POST /api/tournaments/{id}/enter. Returns the backend's success flag."""
        response = await self.executor.execute(
            f"/api/tournaments/{tournament_id}/enter",
            "POST",
            {"playerAddress": player_address},
        )
        return bool(isinstance(response, dict) and response.get("success"))
