"""
cryptotourney/config.py - Local configuration management

Reads user config from a platform-appropriate config directory:
  - macOS/Linux: ~/.cryptotourney/config.toml
  - Windows: %APPDATA%\\cryptotourney\\config.toml

The wallet session (see session.py) is persisted next to it as session.json.

Example:
    [api]
    base_url = "https://tourney-api.example.com"
    timeout = 5.0

    [sync]
    poll_interval = 30

    [wallet]
    private_key = "0x..."

    [chain]
    chain_id = 97
    rpc_url = "https://data-seed-prebsc-1-s1.binance.org:8545"
"""

import logging
import os
import sys
import tomllib
from dataclasses import dataclass, field
from pathlib import Path

logger = logging.getLogger(__name__)

# ============================================================================
# Constants
# ============================================================================


def _get_config_dir() -> Path:
    """Get platform-appropriate config directory."""
    if sys.platform == "win32":
        appdata = os.environ.get("APPDATA")
        if appdata:
            return Path(appdata) / "cryptotourney"
    return Path.home() / ".cryptotourney"


CONFIG_DIR = _get_config_dir()
CONFIG_PATH = CONFIG_DIR / "config.toml"
SESSION_PATH = CONFIG_DIR / "session.json"

DEFAULT_API_URL = "http://localhost:3000"
API_URL_ENV = "CRYPTOTOURNEY_API_URL"

# Deployed tournament contract on BSC testnet
DEFAULT_TOURNAMENT_CONTRACT = "0x359d14410282EEAFcc9CD92c2CDbAB9386348a35"


# ============================================================================
# Data Types
# ============================================================================


@dataclass
class ApiConfig:
    """Backend REST and push endpoints."""

    base_url: str = DEFAULT_API_URL
    ws_url: str | None = None  # Derived from base_url when unset
    timeout: float = 5.0  # Seconds per attempt
    max_retries: int = 3  # Retries after the first attempt
    retry_delay: float = 1.0  # Constant delay between attempts

    @property
    def push_url(self) -> str:
        if self.ws_url:
            return self.ws_url
        base = self.base_url.rstrip("/")
        return f"{base.replace('http', 'ws', 1)}/ws"


@dataclass
class SyncConfig:
    """Polling cadence for the sync layer."""

    poll_interval: float = 30.0  # Tournament list refetch
    balance_refresh_interval: float = 10.0  # Wallet chain/balance refresh
    reconnect_delay: float = 1.0  # Push channel reconnect


@dataclass
class WalletConfig:
    """Local signing key."""

    address: str | None = None
    private_key: str | None = None


@dataclass
class ChainConfig:
    """Target network. Sessions on any other chain must switch first."""

    chain_id: int = 97  # BSC testnet
    chain_name: str = "BSC Testnet"
    rpc_url: str = "https://data-seed-prebsc-1-s1.binance.org:8545"
    explorer_url: str = "https://testnet.bscscan.com"
    currency_name: str = "BNB"
    currency_symbol: str = "tBNB"
    currency_decimals: int = 18
    tournament_contract: str = DEFAULT_TOURNAMENT_CONTRACT

    @property
    def chain_id_hex(self) -> str:
        return hex(self.chain_id)

    def add_chain_params(self) -> dict:
        """Parameters for the agent's add-network request (EIP-3085 shape)."""
        return {
            "chainId": self.chain_id_hex,
            "chainName": self.chain_name,
            "nativeCurrency": {
                "name": self.currency_name,
                "symbol": self.currency_symbol,
                "decimals": self.currency_decimals,
            },
            "rpcUrls": [self.rpc_url],
            "blockExplorerUrls": [self.explorer_url],
        }


@dataclass
class TourneyConfig:
    """Top-level configuration."""

    api: ApiConfig = field(default_factory=ApiConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    chain: ChainConfig = field(default_factory=ChainConfig)
    wallet: WalletConfig | None = None
    session_path: Path = SESSION_PATH


# ============================================================================
# Parsing
# ============================================================================


def _section(raw: dict, name: str) -> dict:
    data = raw.get(name, {})
    if not isinstance(data, dict):
        logger.warning(f"Ignoring [{name}]: expected a table")
        return {}
    return data


def load_config(path: Path | None = None) -> TourneyConfig:
    """
    Read config from TOML file.

    Args:
        path: Override config file path (default: ~/.cryptotourney/config.toml)

    Returns:
        TourneyConfig. Missing file or bad TOML returns defaults. The
        CRYPTOTOURNEY_API_URL environment variable overrides [api] base_url.
    """
    config_path = path or CONFIG_PATH
    raw: dict = {}

    if config_path.exists():
        try:
            with open(config_path, "rb") as f:
                raw = tomllib.load(f)
        except Exception as e:
            logger.warning(f"Failed to parse {config_path}: {e}")
            raw = {}

    # Parse [api] section
    api_data = _section(raw, "api")
    _api = ApiConfig()
    api = ApiConfig(
        base_url=api_data.get("base_url", _api.base_url),
        ws_url=api_data.get("ws_url"),
        timeout=float(api_data.get("timeout", _api.timeout)),
        max_retries=int(api_data.get("max_retries", _api.max_retries)),
        retry_delay=float(api_data.get("retry_delay", _api.retry_delay)),
    )
    env_url = os.environ.get(API_URL_ENV)
    if env_url:
        api.base_url = env_url

    # Parse [sync] section
    sync_data = _section(raw, "sync")
    _sync = SyncConfig()
    sync = SyncConfig(
        poll_interval=float(sync_data.get("poll_interval", _sync.poll_interval)),
        balance_refresh_interval=float(
            sync_data.get("balance_refresh_interval", _sync.balance_refresh_interval)
        ),
        reconnect_delay=float(sync_data.get("reconnect_delay", _sync.reconnect_delay)),
    )

    # Parse [wallet] section
    wallet = None
    if "wallet" in raw and isinstance(raw["wallet"], dict):
        wallet_data = raw["wallet"]
        wallet = WalletConfig(
            address=wallet_data.get("address"),
            private_key=wallet_data.get("private_key"),
        )

    # Parse [chain] section
    chain_data = _section(raw, "chain")
    _chain = ChainConfig()
    chain = ChainConfig(
        chain_id=int(chain_data.get("chain_id", _chain.chain_id)),
        chain_name=chain_data.get("chain_name", _chain.chain_name),
        rpc_url=chain_data.get("rpc_url", _chain.rpc_url),
        explorer_url=chain_data.get("explorer_url", _chain.explorer_url),
        currency_name=chain_data.get("currency_name", _chain.currency_name),
        currency_symbol=chain_data.get("currency_symbol", _chain.currency_symbol),
        currency_decimals=int(chain_data.get("currency_decimals", _chain.currency_decimals)),
        tournament_contract=chain_data.get("tournament_contract", _chain.tournament_contract),
    )

    session_path = config_path.parent / SESSION_PATH.name if path else SESSION_PATH

    return TourneyConfig(
        api=api, sync=sync, chain=chain, wallet=wallet, session_path=session_path,
    )
