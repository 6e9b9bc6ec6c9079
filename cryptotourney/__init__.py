"""
CryptoTournaments - client sync layer

Finds tournaments, joins them with an on-chain entry fee, and keeps a live
view of their standings in step with the backend.
"""

__version__ = "0.1.0"

from .errors import (
    TourneyError,
    RequestError,
    NetworkFailure,
    RequestTimeout,
    Unreachable,
    ServerError,
    RemoteRejection,
    AgentError,
    UserRejection,
    AgentUnavailable,
    ChainMismatch,
    ContractError,
    JoinNotAllowed,
    InvalidTransition,
)

from .models import (
    TournamentStatus,
    Tournament,
    Player,
    TournamentPlayers,
    JoinReceipt,
)

from .config import (
    TourneyConfig,
    load_config,
)

from .executor import RequestExecutor
from .tournament import TournamentService
from .channel import LiveUpdateChannel, Subscription

from .session import (
    SessionState,
    WalletSession,
    SessionStore,
    WalletSessionManager,
)

from .sync import TournamentView, TournamentBoard
from .client import TournamentClient

__all__ = [
    # Version
    "__version__",
    # Errors
    "TourneyError",
    "RequestError",
    "NetworkFailure",
    "RequestTimeout",
    "Unreachable",
    "ServerError",
    "RemoteRejection",
    "AgentError",
    "UserRejection",
    "AgentUnavailable",
    "ChainMismatch",
    "ContractError",
    "JoinNotAllowed",
    "InvalidTransition",
    # Models
    "TournamentStatus",
    "Tournament",
    "Player",
    "TournamentPlayers",
    "JoinReceipt",
    # Config
    "TourneyConfig",
    "load_config",
    # Transport
    "RequestExecutor",
    "TournamentService",
    "LiveUpdateChannel",
    "Subscription",
    # Wallet session
    "SessionState",
    "WalletSession",
    "SessionStore",
    "WalletSessionManager",
    # Sync
    "TournamentView",
    "TournamentBoard",
    "TournamentClient",
]
