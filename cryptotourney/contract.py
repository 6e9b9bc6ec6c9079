"""
cryptotourney/contract.py - Tournament contract calls via the signing agent.

Two writes matter to the client: joinTournament(id) (payable, value = entry
fee) and registerPlayer(username). Calldata is encoded with web3; the
transaction itself goes through the SigningAgent so the same code works with
any wallet. Known revert reasons are turned into readable messages.
"""

import logging
from typing import Any

from web3 import Web3

from .errors import AgentError, ContractError, UserRejection
from .wallet import SigningAgent

logger = logging.getLogger(__name__)

# Tournament contract ABI, only the functions the client calls.
TOURNAMENT_ABI = [
    {
        "type": "function",
        "name": "joinTournament",
        "inputs": [{"name": "tournamentId", "type": "uint256"}],
        "outputs": [],
        "stateMutability": "payable",
    },
    {
        "type": "function",
        "name": "registerPlayer",
        "inputs": [{"name": "username", "type": "string"}],
        "outputs": [],
        "stateMutability": "nonpayable",
    },
]

# Revert reason substring -> message shown to the user
REVERT_MESSAGES = [
    ("Tournament not open for joining", "Tournament is not open for joining"),
    ("Registration period ended", "Registration period has ended"),
    ("Tournament is full", "Tournament is full"),
    ("Incorrect ETH amount sent", "Incorrect entry fee amount"),
    ("Already joined this tournament", "You have already joined this tournament"),
    ("onlyRegisteredPlayer", "You must register as a player first"),
]


def translate_revert(error: Exception, fallback: str) -> ContractError:
    text = str(error)
    for needle, message in REVERT_MESSAGES:
        if needle in text:
            return ContractError(message)
    return ContractError(f"{fallback}: {text}" if text else fallback)


class TournamentContract:
    """Writes to the deployed tournament contract.

    Args:
        agent: Signing agent that sends and confirms transactions.
        contract_address: Deployed contract address.
    """

    def __init__(self, agent: SigningAgent, contract_address: str):
        self.agent = agent
        self.address = Web3.to_checksum_address(contract_address)
        self._contract = Web3().eth.contract(address=self.address, abi=TOURNAMENT_ABI)

    def encode_join(self, tournament_id: int) -> str:
        return self._contract.encode_abi("joinTournament", args=[tournament_id])

    def encode_register(self, username: str) -> str:
        return self._contract.encode_abi("registerPlayer", args=[username])

    async def join_tournament(self, tournament_id: int, entry_fee: int, sender: str) -> dict[str, Any]:
        """Pay the entry fee on-chain. Returns the mined receipt.

        Raises:
            UserRejection: the user declined in the agent.
            ContractError: the transaction failed or reverted.
        """
        tx = {
            "to": self.address,
            "from": sender,
            "value": hex(entry_fee),
            "data": self.encode_join(tournament_id),
        }
        logger.info(f"Joining tournament {tournament_id} on-chain (fee {entry_fee} wei)")
        return await self._transact(
            tx,
            failure="Failed to join tournament",
            rejected="Transaction rejected by user",
        )

    async def register_player(self, username: str, sender: str) -> dict[str, Any]:
        """Register `sender` as a player under `username`. Returns the receipt."""
        tx = {
            "to": self.address,
            "from": sender,
            "data": self.encode_register(username),
        }
        logger.info(f"Registering player {username!r}")
        return await self._transact(
            tx,
            failure="Failed to register as a player",
            rejected="Registration rejected by user",
        )

    async def _transact(self, tx: dict[str, Any], failure: str, rejected: str) -> dict[str, Any]:
        try:
            tx_hash = await self.agent.send_transaction(tx)
            logger.info(f"Transaction submitted, waiting for confirmation: {tx_hash}")
            receipt = await self.agent.wait_for_receipt(tx_hash)
        except UserRejection as e:
            raise UserRejection(rejected) from e
        except AgentError as e:
            raise translate_revert(e, failure) from e

        if receipt.get("status") != 1:
            raise ContractError(f"{failure}: transaction {tx_hash} reverted")

        logger.info(f"Transaction confirmed in block {receipt.get('blockNumber')}")
        return receipt
