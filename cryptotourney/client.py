"""
cryptotourney/client.py - Wires the sync layer together from a TourneyConfig.

One TournamentClient per process. It owns the single RequestExecutor, the
single LiveUpdateChannel and the single WalletSessionManager, and hands them
to the tournament board. Nothing here is a global: build the client, use it,
close it.

Usage:
    async with TournamentClient(load_config()) as client:
        await client.start()
        for t in client.board.tournaments:
            print(t.name)
"""

import logging

from .channel import LiveUpdateChannel
from .config import TourneyConfig
from .contract import TournamentContract
from .executor import RequestExecutor
from .session import SessionStore, WalletSessionManager
from .sync import TournamentBoard
from .tournament import TournamentService
from .wallet import LocalAccountAgent

logger = logging.getLogger(__name__)


class TournamentClient:
    """Explicitly constructed container for the sync layer's singletons.

    Args:
        config: Loaded configuration.
        executor / channel / agent: Optional overrides (tests inject fakes).
            Without an agent override one is built from [wallet] private_key,
            or the session runs agentless.
    """

    def __init__(
        self,
        config: TourneyConfig,
        executor: RequestExecutor | None = None,
        channel: LiveUpdateChannel | None = None,
        agent=None,
        persist_session: bool = True,
    ):
        self.config = config
        self.executor = executor or RequestExecutor.from_config(config.api)
        self.service = TournamentService(self.executor)
        self.channel = channel or LiveUpdateChannel(
            config.api.push_url, reconnect_delay=config.sync.reconnect_delay,
        )
        self.agent = agent if agent is not None else LocalAccountAgent.from_config(config)

        store = SessionStore(config.session_path) if persist_session else None
        self.session = WalletSessionManager(
            self.agent,
            self.executor,
            store,
            config.chain,
            refresh_interval=config.sync.balance_refresh_interval,
        )

        contract = None
        if self.agent is not None and config.chain.tournament_contract:
            contract = TournamentContract(self.agent, config.chain.tournament_contract)

        self.board = TournamentBoard(
            self.service,
            self.channel,
            self.session,
            contract,
            poll_interval=config.sync.poll_interval,
        )

    async def start(self, poll: bool = True) -> None:
        """Restore the wallet session and load the tournament list.

        With poll=True the board keeps refetching every poll_interval;
        otherwise it is loaded once.
        """
        await self.session.start()
        if poll:
            self.board.start()
        else:
            await self.board.refresh()

    async def close(self) -> None:
        await self.board.stop()
        await self.session.stop()
        await self.channel.close()
        await self.executor.aclose()
        logger.debug("Tournament client closed")

    async def __aenter__(self) -> "TournamentClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()
