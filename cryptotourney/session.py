"""
cryptotourney/session.py - Wallet session state machine.

    DISCONNECTED --connect()--> CONNECTING --ok--> CONNECTED
                                    |                  |  accountsChanged / chainChanged -> connect()
                                    +--any failure--> ERRORED     periodic refresh (chain id + balance)
    CONNECTED | ERRORED --disconnect()--> DISCONNECTED (persisted record removed)

ERRORED is not terminal: connect() again starts over from CONNECTING.

A successful connect also tells the backend about the session with a signed,
single-use nonce message. If that fails the wallet still counts as connected;
the failure is kept as an advisory error string next to the connected state.

Every published state is a complete frozen WalletSession, so observers never
see half an update (address set but chain id missing). Overlapping connect()
and refresh() calls are last-write-wins.

On start() the last persisted session is shown right away, before anything is
verified, and connect() then reconciles it with the agent. Until that
finishes `verified` is False.
"""

import asyncio
import json
import logging
import secrets
from dataclasses import asdict, dataclass, replace
from enum import Enum
from pathlib import Path
from typing import Any, Callable

from .config import ChainConfig
from .errors import (
    UNRECOGNIZED_CHAIN_CODE,
    AgentError,
    AgentUnavailable,
    ChainMismatch,
    RequestError,
)
from .executor import RequestExecutor
from .wallet import ACCOUNTS_CHANGED, CHAIN_CHANGED, SigningAgent, format_ether

logger = logging.getLogger(__name__)

STORAGE_KEY = "wallet"
LOGIN_MESSAGE_PREFIX = "Sign this message to connect to CryptoTournaments"
BACKEND_SYNC_ADVISORY = "Connected to wallet, but backend sync failed"
NO_AGENT_ERROR = "No signing agent available - add a [wallet] private_key to config.toml"


def generate_nonce() -> str:
    return secrets.token_hex(16)


def login_message(nonce: str) -> str:
    return f"{LOGIN_MESSAGE_PREFIX}: {nonce}"


# ============================================================================
# Session value
# ============================================================================


class SessionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ERRORED = "errored"


@dataclass(frozen=True)
class WalletSession:
    """The client's relationship to the signing agent."""

    address: str | None = None
    chain_id: int | None = None
    balance: str | None = None  # Decimal ether string
    is_connecting: bool = False
    error: str | None = None

    def __post_init__(self):
        if self.address is None and (self.chain_id is not None or self.balance is not None):
            raise ValueError("A session without an address cannot have a chain id or balance")

    @property
    def state(self) -> SessionState:
        if self.is_connecting:
            return SessionState.CONNECTING
        if self.address is not None:
            return SessionState.CONNECTED
        if self.error is not None:
            return SessionState.ERRORED
        return SessionState.DISCONNECTED

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        return {
            "address": data["address"],
            "chainId": data["chain_id"],
            "balance": data["balance"],
            "isConnecting": data["is_connecting"],
            "error": data["error"],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "WalletSession":
        if not isinstance(data, dict):
            raise ValueError("Session record must be an object")
        chain_id = data.get("chainId")
        return cls(
            address=data.get("address"),
            chain_id=int(chain_id) if chain_id is not None else None,
            balance=data.get("balance"),
            is_connecting=bool(data.get("isConnecting", False)),
            error=data.get("error"),
        )


class SessionStore:
    """Durable local storage: a JSON document with the session under one key."""

    def __init__(self, path: Path, key: str = STORAGE_KEY):
        self.path = Path(path)
        self.key = key

    def _read(self) -> dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            doc = json.loads(self.path.read_text())
        except (OSError, ValueError) as e:
            logger.warning(f"Failed to read {self.path}: {e}")
            return {}
        return doc if isinstance(doc, dict) else {}

    def _write(self, doc: dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(".tmp")
        tmp.write_text(json.dumps(doc, indent=2))
        tmp.replace(self.path)

    def load(self) -> WalletSession | None:
        record = self._read().get(self.key)
        if record is None:
            return None
        try:
            return WalletSession.from_dict(record)
        except (TypeError, ValueError) as e:
            logger.warning(f"Discarding persisted session: {e}")
            return None

    def save(self, session: WalletSession) -> None:
        doc = self._read()
        doc[self.key] = session.to_dict()
        self._write(doc)

    def clear(self) -> None:
        doc = self._read()
        if self.key not in doc:
            return
        del doc[self.key]
        if doc:
            self._write(doc)
        else:
            self.path.unlink(missing_ok=True)


# ============================================================================
# State machine
# ============================================================================


class WalletSessionManager:
    """Owns the single WalletSession of this process.

    Args:
        agent: Signing agent, or None when no wallet is available.
        executor: Used to notify the backend on connect.
        store: Where sessions persist across restarts (None: in memory only).
        chain: Target network for switch_network() / require_chain().
        refresh_interval: Seconds between chain/balance refreshes (0 disables).
    """

    def __init__(
        self,
        agent: SigningAgent | None,
        executor: RequestExecutor | None,
        store: SessionStore | None,
        chain: ChainConfig,
        refresh_interval: float = 10.0,
    ):
        self.agent = agent
        self.executor = executor
        self.store = store
        self.chain = chain
        self.refresh_interval = refresh_interval
        self.verified = True

        self._session = WalletSession()
        self._observers: list[Callable[[WalletSession], None]] = []
        self._listening = False
        self._refresh_task: asyncio.Task | None = None
        self._background: set[asyncio.Task] = set()

    @property
    def session(self) -> WalletSession:
        return self._session

    @property
    def state(self) -> SessionState:
        return self._session.state

    @property
    def is_connected(self) -> bool:
        return self._session.state == SessionState.CONNECTED

    def on_change(self, observer: Callable[[WalletSession], None]) -> Callable[[], None]:
        """Call `observer` with every published session. Returns a remover."""
        self._observers.append(observer)

        def remove() -> None:
            if observer in self._observers:
                self._observers.remove(observer)

        return remove

    def _publish(self, session: WalletSession, persist: bool = False) -> None:
        self._session = session
        if persist and self.store is not None:
            self.store.save(session)
        for observer in list(self._observers):
            try:
                observer(session)
            except Exception as e:
                logger.error(f"Session observer failed: {e}")

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> WalletSession:
        """Restore the persisted session, hook agent events, start refreshing."""
        restored = self.store.load() if self.store is not None else None
        if restored is not None:
            self.verified = restored.address is None
            self._publish(replace(restored, is_connecting=False))
            logger.debug(f"Restored wallet session ({restored.state.value})")

        self._listen()

        if self._refresh_task is None and self.refresh_interval > 0:
            self._refresh_task = asyncio.create_task(self._refresh_loop())

        if self._session.address is not None and self.agent is not None:
            await self.connect()
        return self._session

    async def stop(self) -> None:
        tasks = list(self._background)
        if self._refresh_task is not None:
            tasks.append(self._refresh_task)
            self._refresh_task = None
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._background.clear()
        if self.agent is not None and self._listening:
            self.agent.remove_all_listeners()
            self._listening = False

    def _listen(self) -> None:
        """Register for agent notifications, once."""
        if self._listening or self.agent is None:
            return
        self.agent.on(ACCOUNTS_CHANGED, self._on_agent_change)
        self.agent.on(CHAIN_CHANGED, self._on_agent_change)
        self._listening = True

    def _on_agent_change(self, *args: Any) -> None:
        logger.info("Wallet account or network changed, reconnecting")
        task = asyncio.get_running_loop().create_task(self.connect())
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _refresh_loop(self) -> None:
        while True:
            await asyncio.sleep(self.refresh_interval)
            await self.refresh()

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    async def connect(self) -> WalletSession:
        """Run the full handshake: accounts, network, balance, signature."""
        if self.agent is None:
            error = AgentUnavailable(NO_AGENT_ERROR)
            logger.warning(f"Wallet connect failed: {error}")
            errored = WalletSession(error=str(error))
            self._publish(errored, persist=True)
            self.verified = True
            return errored

        self._publish(replace(self._session, is_connecting=True, error=None))

        try:
            accounts = await self.agent.request_accounts()
            if not accounts:
                raise AgentError("No accounts available")
            address = accounts[0]
            chain_id = await self.agent.get_chain_id()
            balance = await self.agent.get_balance(address)
            message = login_message(generate_nonce())
            signature = await self.agent.sign_message(address, message)
        except Exception as e:
            logger.warning(f"Wallet connection failed: {e}")
            errored = WalletSession(error=str(e) or "Failed to connect wallet")
            self._publish(errored, persist=True)
            self.verified = True
            return errored

        backend_synced = await self._notify_backend(address, signature, message)
        connected = WalletSession(
            address=address,
            chain_id=int(chain_id),
            balance=format_ether(balance),
            is_connecting=False,
            error=None if backend_synced else BACKEND_SYNC_ADVISORY,
        )
        self._publish(connected, persist=True)
        self.verified = True
        logger.info(f"Wallet connected: {address} on chain {chain_id} ({connected.balance})")
        return connected

    async def _notify_backend(self, address: str, signature: str, message: str) -> bool:
        if self.executor is None:
            return False
        try:
            response = await self.executor.execute(
                "/api/wallet/connect",
                "POST",
                {"address": address, "signature": signature, "message": message},
            )
        except RequestError as e:
            logger.warning(f"Backend wallet sync failed: {e}")
            return False
        return bool(response)

    def disconnect(self) -> WalletSession:
        """Forget the session here and on disk."""
        disconnected = WalletSession()
        self._publish(disconnected)
        if self.store is not None:
            self.store.clear()
        self.verified = True
        logger.info("Wallet disconnected")
        return disconnected

    async def refresh(self) -> None:
        """Re-read chain id and balance without re-signing."""
        session = self._session
        if self.agent is None or session.address is None or session.is_connecting:
            return
        try:
            chain_id = await self.agent.get_chain_id()
            balance = await self.agent.get_balance(session.address)
        except Exception as e:
            logger.error(f"Failed to update wallet info: {e}")
            return

        current = self._session
        if current.address != session.address or current.is_connecting:
            # A connect or disconnect landed while we were reading
            return
        self._publish(
            replace(current, chain_id=int(chain_id), balance=format_ether(balance)), persist=True,
        )

    async def switch_network(self) -> None:
        """Ask the agent to move to the target chain, adding it if unknown.

        Raises:
            AgentUnavailable: no signing agent is configured.
        """
        if self.agent is None:
            raise AgentUnavailable(NO_AGENT_ERROR)
        try:
            await self.agent.switch_chain(self.chain.chain_id)
            return
        except AgentError as e:
            if e.code != UNRECOGNIZED_CHAIN_CODE:
                logger.warning(f"Network switch failed: {e}")
                return

        try:
            await self.agent.add_chain(self.chain.add_chain_params())
        except Exception as e:
            logger.warning(f"Failed to add {self.chain.chain_name}: {e}")
            self._publish(replace(self._session, error=f"Failed to add {self.chain.chain_name}"))

    def require_chain(self) -> None:
        """Raise ChainMismatch unless connected to the target chain."""
        if self._session.chain_id != self.chain.chain_id:
            raise ChainMismatch(self.chain.chain_id, self._session.chain_id)
