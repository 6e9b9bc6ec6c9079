"""
cryptotourney/wallet.py - Signing agents and local wallet helpers.

The session layer talks to whatever holds the user's keys through the
SigningAgent protocol (the shape of an EIP-1193 browser wallet: request
accounts, query the network, sign, send, switch/add chains, and fire
accountsChanged / chainChanged). LocalAccountAgent implements it with a
private key from config.toml and a JSON-RPC node, using eth-account for
signing and web3 for chain access (no browser needed).

Install the key with:
    cryptotourney wallet generate
"""

import asyncio
import logging
from typing import Any, Callable, Protocol

import eth_account
from eth_account.messages import encode_defunct
from web3 import Web3

from .errors import UNRECOGNIZED_CHAIN_CODE, AgentError

logger = logging.getLogger(__name__)

ACCOUNTS_CHANGED = "accountsChanged"
CHAIN_CHANGED = "chainChanged"


def _0x(value: str) -> str:
    return value if value.startswith("0x") else "0x" + value


def format_ether(wei: int) -> str:
    """Wei -> decimal ether string, e.g. 1500000000000000000 -> "1.5"."""
    return str(Web3.from_wei(wei, "ether"))


# ============================================================================
# Agent protocol
# ============================================================================


class SigningAgent(Protocol):
    """What the session and contract layers need from a wallet."""

    async def request_accounts(self) -> list[str]: ...

    async def get_chain_id(self) -> int: ...

    async def get_balance(self, address: str) -> int: ...

    async def sign_message(self, address: str, message: str) -> str: ...

    async def send_transaction(self, tx: dict[str, Any]) -> str: ...

    async def wait_for_receipt(self, tx_hash: str) -> dict[str, Any]: ...

    async def switch_chain(self, chain_id: int) -> None: ...

    async def add_chain(self, params: dict[str, Any]) -> None: ...

    def on(self, event: str, handler: Callable[..., None]) -> None: ...

    def remove_all_listeners(self) -> None: ...


class AgentEvents:
    """Minimal event emitter for agent notifications."""

    def __init__(self):
        self._handlers: dict[str, list[Callable[..., None]]] = {}

    def on(self, event: str, handler: Callable[..., None]) -> None:
        self._handlers.setdefault(event, []).append(handler)

    def remove_all_listeners(self) -> None:
        self._handlers.clear()

    def listener_count(self, event: str) -> int:
        return len(self._handlers.get(event, []))

    def emit(self, event: str, *args: Any) -> None:
        for handler in list(self._handlers.get(event, [])):
            try:
                handler(*args)
            except Exception as e:
                logger.error(f"{event} handler failed: {e}")


# ============================================================================
# Local key agent
# ============================================================================


def generate_wallet() -> tuple[str, str]:
    """Generate a new Ethereum wallet.

    Returns:
        (address, private_key_hex); the private key includes the 0x prefix.
    """
    account = eth_account.Account.create()
    return (account.address, _0x(account.key.hex()))


def load_wallet(config):
    """Load a LocalAccount from a TourneyConfig's wallet section.

    Returns:
        LocalAccount if wallet is configured with a private key, None otherwise.
    """
    if config.wallet is None or config.wallet.private_key is None:
        return None
    return eth_account.Account.from_key(_0x(config.wallet.private_key))


def recover_signer(message: str, signature: str) -> str:
    """Recover the address that produced an EIP-191 personal_sign signature."""
    return eth_account.Account.recover_message(encode_defunct(text=message), signature=signature)


def _default_web3(rpc_url: str) -> Web3:
    return Web3(Web3.HTTPProvider(rpc_url))


class LocalAccountAgent(AgentEvents):
    """SigningAgent backed by a local private key and a JSON-RPC node.

    Node calls are blocking web3 calls, so they run in a worker thread.
    The agent starts on `chain_id` and only knows networks it was given or
    later asked to add; switching to anything else fails with code 4902 the
    way a browser wallet does.

    Args:
        account: eth_account LocalAccount.
        rpc_url: RPC endpoint for the starting network.
        chain_id: Starting network id.
        web3_factory: rpc_url -> Web3 (tests inject a fake).
    """

    def __init__(
        self,
        account,
        rpc_url: str,
        chain_id: int,
        web3_factory: Callable[[str], Any] = _default_web3,
        receipt_timeout: float = 120.0,
    ):
        super().__init__()
        self.account = account
        self.chain_id = chain_id
        self.receipt_timeout = receipt_timeout
        self._web3_factory = web3_factory
        self._networks: dict[int, str] = {chain_id: rpc_url}
        self._w3 = web3_factory(rpc_url)

    @classmethod
    def from_config(cls, config, **kwargs) -> "LocalAccountAgent | None":
        account = load_wallet(config)
        if account is None:
            return None
        return cls(account, config.chain.rpc_url, config.chain.chain_id, **kwargs)

    async def _rpc(self, fn: Callable, *args, **kwargs):
        try:
            return await asyncio.to_thread(fn, *args, **kwargs)
        except AgentError:
            raise
        except Exception as e:
            raise AgentError(f"RPC call failed: {e}") from e

    def use_account(self, account) -> None:
        """Swap the active key, as a wallet UI account switch would."""
        self.account = account
        self.emit(ACCOUNTS_CHANGED, [account.address])

    # --- SigningAgent ---

    async def request_accounts(self) -> list[str]:
        return [self.account.address]

    async def get_chain_id(self) -> int:
        return await self._rpc(lambda: self._w3.eth.chain_id)

    async def get_balance(self, address: str) -> int:
        return await self._rpc(self._w3.eth.get_balance, Web3.to_checksum_address(address))

    async def sign_message(self, address: str, message: str) -> str:
        if address.lower() != self.account.address.lower():
            raise AgentError(f"Unknown account {address}")
        signed = self.account.sign_message(encode_defunct(text=message))
        return _0x(signed.signature.hex())

    async def send_transaction(self, tx: dict[str, Any]) -> str:
        """Fill in nonce/gas/chain, sign locally, broadcast. Returns the tx hash."""

        def _send() -> str:
            w3 = self._w3
            value = tx.get("value", 0)
            full_tx = {
                "to": Web3.to_checksum_address(tx["to"]),
                "from": self.account.address,
                "value": int(value, 16) if isinstance(value, str) else int(value),
                "data": tx.get("data", "0x"),
                "nonce": w3.eth.get_transaction_count(self.account.address),
                "gasPrice": w3.eth.gas_price,
                "chainId": self.chain_id,
            }
            full_tx["gas"] = tx.get("gas") or w3.eth.estimate_gas(full_tx)
            signed = self.account.sign_transaction(full_tx)
            tx_hash = w3.eth.send_raw_transaction(signed.raw_transaction)
            return _0x(tx_hash.hex())

        return await self._rpc(_send)

    async def wait_for_receipt(self, tx_hash: str) -> dict[str, Any]:
        receipt = await self._rpc(
            self._w3.eth.wait_for_transaction_receipt, tx_hash, timeout=self.receipt_timeout,
        )
        return dict(receipt)

    async def switch_chain(self, chain_id: int) -> None:
        rpc_url = self._networks.get(chain_id)
        if rpc_url is None:
            raise AgentError(f"Unrecognized chain ID {hex(chain_id)}", code=UNRECOGNIZED_CHAIN_CODE)
        if chain_id == self.chain_id:
            return
        self._w3 = self._web3_factory(rpc_url)
        self.chain_id = chain_id
        logger.info(f"Switched to chain {chain_id}")
        self.emit(CHAIN_CHANGED, hex(chain_id))

    async def add_chain(self, params: dict[str, Any]) -> None:
        """Register a network (EIP-3085 params) and switch to it."""
        try:
            chain_id = int(params["chainId"], 16)
            rpc_url = params["rpcUrls"][0]
        except (KeyError, IndexError, TypeError, ValueError) as e:
            raise AgentError(f"Invalid chain parameters: {e}") from e
        self._networks[chain_id] = rpc_url
        logger.info(f"Added network {params.get('chainName', chain_id)}")
        await self.switch_chain(chain_id)
