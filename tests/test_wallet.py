"""Tests for cryptotourney.wallet: local keys and the signing agent."""

import textwrap
from unittest.mock import MagicMock

import pytest

# Skip entire module if eth-account isn't installed
eth_account = pytest.importorskip("eth_account", reason="eth-account not installed")

from cryptotourney.config import ChainConfig, TourneyConfig, WalletConfig
from cryptotourney.errors import UNRECOGNIZED_CHAIN_CODE, AgentError
from cryptotourney.session import login_message
from cryptotourney.wallet import (
    ACCOUNTS_CHANGED,
    CHAIN_CHANGED,
    LocalAccountAgent,
    format_ether,
    generate_wallet,
    load_wallet,
    recover_signer,
)


# A fixed test key for deterministic tests
TEST_PRIVATE_KEY = "0x4c0883a69102937d6231471b5dbb6204fe512961708279f3a3e6d8b4f8e2c7e1"
TEST_CONTRACT = "0x1234567890AbcdEF1234567890aBcdef12345678"
TEST_RPC = "https://rpc.test"


@pytest.fixture
def test_account():
    """A deterministic test account."""
    return eth_account.Account.from_key(TEST_PRIVATE_KEY)


class FakeWeb3Factory:
    """rpc_url -> MagicMock standing in for Web3. Remembers every URL asked for."""

    def __init__(self):
        self.urls: list[str] = []
        self.instances: list[MagicMock] = []

    def __call__(self, rpc_url: str):
        self.urls.append(rpc_url)
        w3 = MagicMock()
        w3.eth.chain_id = 97
        w3.eth.get_balance.return_value = 3 * 10**18
        w3.eth.get_transaction_count.return_value = 4
        w3.eth.gas_price = 10**9
        w3.eth.estimate_gas.return_value = 60_000
        w3.eth.send_raw_transaction.return_value = bytes.fromhex("ab" * 32)
        w3.eth.wait_for_transaction_receipt.return_value = {"status": 1, "blockNumber": 12}
        self.instances.append(w3)
        return w3


@pytest.fixture
def factory():
    return FakeWeb3Factory()


@pytest.fixture
def agent(test_account, factory):
    return LocalAccountAgent(test_account, TEST_RPC, 97, web3_factory=factory)


class TestGenerateWallet:
    def test_returns_address_and_key(self):
        address, key = generate_wallet()
        assert address.startswith("0x")
        assert len(address) == 42
        assert key.startswith("0x")
        assert len(key) == 66  # 0x + 64 hex chars

    def test_generates_unique_wallets(self):
        addr1, _ = generate_wallet()
        addr2, _ = generate_wallet()
        assert addr1 != addr2

    def test_key_recovers_to_address(self):
        address, key = generate_wallet()
        account = eth_account.Account.from_key(key)
        assert account.address == address


class TestLoadWallet:
    def test_loads_from_config(self):
        config = TourneyConfig(wallet=WalletConfig(address="0x1234", private_key=TEST_PRIVATE_KEY))
        account = load_wallet(config)
        assert account is not None
        assert account.address == eth_account.Account.from_key(TEST_PRIVATE_KEY).address

    def test_returns_none_without_wallet(self):
        assert load_wallet(TourneyConfig()) is None

    def test_returns_none_without_key(self):
        assert load_wallet(TourneyConfig(wallet=WalletConfig(address="0x1234"))) is None

    def test_handles_key_without_0x_prefix(self):
        config = TourneyConfig(wallet=WalletConfig(private_key=TEST_PRIVATE_KEY[2:]))
        assert load_wallet(config) is not None

    def test_loads_from_config_file(self, tmp_path):
        """Round-trip: write config.toml, load it, get wallet."""
        from cryptotourney.config import load_config

        config_path = tmp_path / "config.toml"
        config_path.write_text(textwrap.dedent(f"""\
            [wallet]
            address = "0xdeadbeef"
            private_key = "{TEST_PRIVATE_KEY}"
        """))

        cfg = load_config(config_path)
        assert cfg.wallet.private_key == TEST_PRIVATE_KEY
        assert load_wallet(cfg) is not None


class TestFormatEther:
    def test_whole_and_fractional(self):
        assert format_ether(10**18) == "1"
        assert format_ether(1_500_000_000_000_000_000) == "1.5"
        assert format_ether(0) == "0"


class TestLocalAccountAgent:
    def test_from_config_without_wallet(self):
        assert LocalAccountAgent.from_config(TourneyConfig()) is None

    def test_from_config_uses_chain(self, factory):
        config = TourneyConfig(
            wallet=WalletConfig(private_key=TEST_PRIVATE_KEY),
            chain=ChainConfig(chain_id=56, rpc_url="https://bsc.example.com"),
        )
        agent = LocalAccountAgent.from_config(config, web3_factory=factory)
        assert agent.chain_id == 56
        assert factory.urls == ["https://bsc.example.com"]

    @pytest.mark.asyncio
    async def test_accounts_chain_and_balance(self, agent, test_account):
        assert await agent.request_accounts() == [test_account.address]
        assert await agent.get_chain_id() == 97
        assert await agent.get_balance(test_account.address.lower()) == 3 * 10**18

    @pytest.mark.asyncio
    async def test_rpc_failure_becomes_agent_error(self, agent, factory, test_account):
        factory.instances[0].eth.get_balance.side_effect = ConnectionError("node down")
        with pytest.raises(AgentError, match="node down"):
            await agent.get_balance(test_account.address)

    @pytest.mark.asyncio
    async def test_signed_login_recovers_to_account(self, agent, test_account):
        message = login_message("abc123")
        signature = await agent.sign_message(test_account.address, message)
        assert signature.startswith("0x")
        assert recover_signer(message, signature) == test_account.address

    @pytest.mark.asyncio
    async def test_different_message_recovers_other_address(self, agent, test_account):
        signature = await agent.sign_message(test_account.address, login_message("one"))
        assert recover_signer(login_message("two"), signature) != test_account.address

    @pytest.mark.asyncio
    async def test_sign_for_unknown_account(self, agent):
        with pytest.raises(AgentError):
            await agent.sign_message("0x0000000000000000000000000000000000000001", "hi")

    @pytest.mark.asyncio
    async def test_send_transaction(self, agent, factory, test_account):
        tx_hash = await agent.send_transaction({
            "to": TEST_CONTRACT,
            "from": test_account.address,
            "value": hex(10**16),
            "data": "0x",
        })
        w3 = factory.instances[0]
        assert tx_hash == "0x" + "ab" * 32
        w3.eth.send_raw_transaction.assert_called_once()
        estimated = w3.eth.estimate_gas.call_args.args[0]
        assert estimated["value"] == 10**16
        assert estimated["chainId"] == 97
        assert estimated["nonce"] == 4

    @pytest.mark.asyncio
    async def test_wait_for_receipt(self, agent):
        receipt = await agent.wait_for_receipt("0x" + "ab" * 32)
        assert receipt["status"] == 1

    @pytest.mark.asyncio
    async def test_switch_to_unknown_chain(self, agent):
        with pytest.raises(AgentError) as exc_info:
            await agent.switch_chain(56)
        assert exc_info.value.code == UNRECOGNIZED_CHAIN_CODE

    @pytest.mark.asyncio
    async def test_switch_to_current_chain_is_noop(self, agent):
        changes = []
        agent.on(CHAIN_CHANGED, changes.append)
        await agent.switch_chain(97)
        assert changes == []

    @pytest.mark.asyncio
    async def test_add_chain_then_switch(self, agent, factory):
        changes = []
        agent.on(CHAIN_CHANGED, changes.append)
        await agent.add_chain({"chainId": "0x38", "chainName": "BSC", "rpcUrls": ["https://bsc.example.com"]})

        assert agent.chain_id == 56
        assert factory.urls[-1] == "https://bsc.example.com"
        assert changes == ["0x38"]

        # Known now, so switching back and forth works
        await agent.switch_chain(97)
        assert factory.urls[-1] == TEST_RPC

    @pytest.mark.asyncio
    async def test_add_chain_bad_params(self, agent):
        with pytest.raises(AgentError):
            await agent.add_chain({"chainName": "nope"})

    def test_use_account_emits(self, agent):
        seen = []
        agent.on(ACCOUNTS_CHANGED, seen.append)
        other = eth_account.Account.create()
        agent.use_account(other)
        assert seen == [[other.address]]
        assert agent.account is other

    def test_failing_listener_does_not_block_others(self, agent):
        seen = []

        def broken(*args):
            raise RuntimeError("boom")

        agent.on(ACCOUNTS_CHANGED, broken)
        agent.on(ACCOUNTS_CHANGED, seen.append)
        agent.use_account(eth_account.Account.create())
        assert len(seen) == 1

    def test_remove_all_listeners(self, agent):
        agent.on(ACCOUNTS_CHANGED, lambda *a: None)
        agent.remove_all_listeners()
        assert agent.listener_count(ACCOUNTS_CHANGED) == 0
