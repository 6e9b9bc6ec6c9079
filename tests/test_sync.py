"""Tests for cryptotourney.sync: tournament board, live views and the join flow."""

import asyncio
from dataclasses import replace
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio

from cryptotourney.channel import (
    SCORE_UPDATED,
    TOURNAMENT_CANCELED,
    TOURNAMENT_COMPLETED,
    LiveUpdateChannel,
)
from cryptotourney.errors import ChainMismatch, JoinNotAllowed, RemoteRejection, RequestTimeout
from cryptotourney.models import (
    JoinReceipt,
    Player,
    Tournament,
    TournamentPlayers,
    TournamentStatus,
)
from cryptotourney.session import WalletSession
from cryptotourney.sync import TournamentBoard, TournamentView

ADDRESS = "0x70997970C51812dc3A010C7d01b50e0d17dc79C8"
ALICE = "0xAAAA000000000000000000000000000000000001"
BOB = "0xBBBB000000000000000000000000000000000002"


def make_tournament(tid=7, status=TournamentStatus.CREATED, current=9, maximum=10, **kwargs):
    return Tournament(
        id=tid,
        name=f"Cup {tid}",
        entry_fee=10**16,
        max_players=maximum,
        current_players=current,
        lobby_close_time=1000,
        start_time=2000,
        end_time=3000,
        status=status,
        **kwargs,
    )


def board_of(*players):
    return TournamentPlayers(players=tuple(players))


async def _refusing_connect(url, **kwargs):
    raise OSError("offline")


@pytest_asyncio.fixture
async def channel():
    # Offline channel: subscriptions and dispatch work without a server
    ch = LiveUpdateChannel("ws://test/ws", connect=_refusing_connect, reconnect_delay=60)
    yield ch
    await ch.close()


@pytest.fixture
def service():
    svc = AsyncMock()
    svc.get_players.return_value = board_of(Player(ALICE, score=10), Player(BOB, score=20))
    return svc


@pytest.fixture
def session():
    mgr = MagicMock()
    mgr.session = WalletSession(address=ADDRESS, chain_id=97, balance="1")
    return mgr


@pytest.fixture
def contract():
    return AsyncMock()


@pytest.fixture
def board(service, channel, session, contract):
    return TournamentBoard(service, channel, session, contract, poll_interval=0.01, clock=lambda: 500)


# ============================================================================
# TournamentView
# ============================================================================


class TestMount:
    @pytest.mark.asyncio
    async def test_created_tournament_not_observed(self, service, channel):
        view = TournamentView(make_tournament(), service, channel)
        await view.mount()
        assert not view.subscribed
        service.get_players.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_active_tournament_loads_then_subscribes(self, service, channel):
        view = TournamentView(make_tournament(status=TournamentStatus.ACTIVE), service, channel)
        await view.mount()
        assert view.subscribed
        assert channel.subscriber_count(7) == 1
        assert [p.address for p in view.players] == [ALICE, BOB]
        assert [p.address for p in view.ranked_players()] == [BOB, ALICE]

    @pytest.mark.asyncio
    async def test_completed_tournament_observed(self, service, channel):
        view = TournamentView(make_tournament(status=TournamentStatus.COMPLETED), service, channel)
        await view.mount()
        assert view.subscribed

    @pytest.mark.asyncio
    async def test_player_fetch_failure_shows_empty_board(self, service, channel):
        service.get_players.side_effect = RequestTimeout("timeout")
        view = TournamentView(make_tournament(status=TournamentStatus.ACTIVE), service, channel)
        await view.mount()
        assert view.players == ()
        assert view.subscribed

    @pytest.mark.asyncio
    async def test_mount_twice_subscribes_once(self, service, channel):
        view = TournamentView(make_tournament(status=TournamentStatus.ACTIVE), service, channel)
        await view.mount()
        await view.mount()
        assert channel.subscriber_count(7) == 1

    @pytest.mark.asyncio
    async def test_unmount_twice(self, service, channel):
        view = TournamentView(make_tournament(status=TournamentStatus.ACTIVE), service, channel)
        await view.mount()
        await view.unmount()
        await view.unmount()
        assert not view.subscribed
        assert channel.subscriber_count(7) == 0

    @pytest.mark.asyncio
    async def test_unmount_while_players_loading(self, service, channel):
        started, release = asyncio.Event(), asyncio.Event()

        async def slow_players(tournament_id):
            started.set()
            await release.wait()
            return board_of(Player(ALICE, score=1))

        service.get_players.side_effect = slow_players
        view = TournamentView(make_tournament(status=TournamentStatus.ACTIVE), service, channel)
        mounting = asyncio.create_task(view.mount())
        await started.wait()

        await view.unmount()
        release.set()
        await mounting

        assert not view.mounted
        assert not view.subscribed
        assert channel.subscriber_count(7) == 0

    @pytest.mark.asyncio
    async def test_poll_during_mount_subscribes_once(self, service, channel):
        started, release = asyncio.Event(), asyncio.Event()

        async def slow_players(tournament_id):
            started.set()
            await release.wait()
            return board_of(Player(ALICE, score=1))

        service.get_players.side_effect = slow_players
        view = TournamentView(make_tournament(status=TournamentStatus.ACTIVE), service, channel)
        mounting = asyncio.create_task(view.mount())
        await started.wait()

        # A board poll lands a fresh snapshot while the first load is pending
        await view.apply_snapshot(make_tournament(status=TournamentStatus.ACTIVE, current=10))
        release.set()
        await mounting

        assert view.tournament.current_players == 10
        assert channel.subscriber_count(7) == 1
        service.get_players.assert_awaited_once_with(7)

        await view.unmount()
        assert channel.subscriber_count(7) == 0

    @pytest.mark.asyncio
    async def test_malformed_players_response_shows_empty_board(self, service, channel):
        service.get_players.side_effect = RemoteRejection("Malformed tournament players response")
        view = TournamentView(make_tournament(status=TournamentStatus.ACTIVE), service, channel)
        await view.mount()
        assert view.players == ()
        assert view.subscribed
        await view.unmount()

    @pytest.mark.asyncio
    async def test_going_live_starts_observing(self, service, channel):
        view = TournamentView(make_tournament(), service, channel)
        await view.mount()
        await view.apply_snapshot(make_tournament(status=TournamentStatus.ACTIVE))
        assert view.subscribed
        service.get_players.assert_awaited_once_with(7)


class TestLiveEvents:
    @pytest_asyncio.fixture
    async def view(self, service, channel):
        v = TournamentView(make_tournament(status=TournamentStatus.ACTIVE), service, channel)
        await v.mount()
        yield v
        await v.unmount()

    @pytest.mark.asyncio
    async def test_score_update_replaces_score(self, view, channel):
        changes = []
        view.on_change(changes.append)
        channel.dispatch(SCORE_UPDATED, {"tournamentId": 7, "playerAddress": ALICE.lower(), "score": 55})

        scores = {p.address: p.score for p in view.players}
        assert scores == {ALICE: 55, BOB: 20}
        assert len(changes) == 1

    @pytest.mark.asyncio
    async def test_unknown_address_ignored(self, view, channel):
        before = view.players
        channel.dispatch(SCORE_UPDATED, {"tournamentId": 7, "playerAddress": ADDRESS, "score": 99})
        assert view.players == before
        assert len(view.players) == 2

    @pytest.mark.asyncio
    async def test_malformed_score_ignored(self, view, channel):
        before = view.players
        channel.dispatch(SCORE_UPDATED, {"tournamentId": 7, "playerAddress": ALICE, "score": "lots"})
        assert view.players == before

    @pytest.mark.asyncio
    async def test_completion_sets_winners_and_refetches(self, view, channel, service):
        service.get_players.return_value = board_of(Player(ALICE, score=70), Player(BOB, score=40))
        channel.dispatch(TOURNAMENT_COMPLETED, {"id": 7, "status": 2, "winners": [ALICE]})

        assert view.tournament.status == TournamentStatus.COMPLETED
        assert view.tournament.winners == (ALICE,)

        await view.settle()
        assert service.get_players.await_count == 2
        assert {p.address: p.score for p in view.players} == {ALICE: 70, BOB: 40}

    @pytest.mark.asyncio
    async def test_score_after_completion_ignored(self, view, channel):
        channel.dispatch(TOURNAMENT_COMPLETED, {"id": 7, "status": 2})
        await view.settle()
        before = view.players
        channel.dispatch(SCORE_UPDATED, {"tournamentId": 7, "playerAddress": ALICE, "score": 1})
        assert view.players == before

    @pytest.mark.asyncio
    async def test_cancel_sets_status_only(self, view, channel, service):
        channel.dispatch(TOURNAMENT_CANCELED, {"id": 7, "status": 3, "winners": [ALICE]})
        assert view.tournament.status == TournamentStatus.CANCELED
        assert view.tournament.winners is None
        service.get_players.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_backwards_event_ignored(self, view, channel):
        channel.dispatch(TOURNAMENT_COMPLETED, {"id": 7, "status": 2})
        await view.settle()
        channel.dispatch(TOURNAMENT_CANCELED, {"id": 7, "status": 3})
        assert view.tournament.status == TournamentStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_other_tournament_events_ignored(self, view, channel):
        channel.dispatch(TOURNAMENT_CANCELED, {"id": 8, "status": 3})
        assert view.tournament.status == TournamentStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_stale_poll_does_not_undo_completion(self, view, channel):
        channel.dispatch(TOURNAMENT_COMPLETED, {"id": 7, "status": 2})
        await view.settle()
        await view.apply_snapshot(make_tournament(status=TournamentStatus.ACTIVE))
        assert view.tournament.status == TournamentStatus.COMPLETED


# ============================================================================
# TournamentBoard
# ============================================================================


class TestBoardRefresh:
    @pytest.mark.asyncio
    async def test_refresh_caches_list(self, board, service):
        service.list_all.return_value = [make_tournament(7), make_tournament(8)]
        tournaments = await board.refresh()
        assert [t.id for t in tournaments] == [7, 8]
        assert board.get(8).id == 8

    @pytest.mark.asyncio
    async def test_empty_read_keeps_cache(self, board, service):
        service.list_all.return_value = [make_tournament(7)]
        await board.refresh()
        service.list_all.return_value = []
        await board.refresh()
        assert board.get(7) is not None

    @pytest.mark.asyncio
    async def test_refresh_feeds_watched_views(self, board, service):
        service.list_all.return_value = [make_tournament(7)]
        await board.refresh()
        view = await board.watch(7)
        assert not view.subscribed

        service.list_all.return_value = [make_tournament(7, status=TournamentStatus.ACTIVE)]
        await board.refresh()
        assert view.tournament.status == TournamentStatus.ACTIVE
        assert view.subscribed
        await board.stop()
        assert not view.subscribed

    @pytest.mark.asyncio
    async def test_pushed_status_reaches_board_cache(self, board, service, channel):
        service.list_all.return_value = [make_tournament(7, status=TournamentStatus.ACTIVE)]
        await board.refresh()
        await board.watch(7)

        seen = []
        board.on_change(seen.append)
        channel.dispatch(TOURNAMENT_CANCELED, {"id": 7, "status": 3})

        assert board.get(7).status == TournamentStatus.CANCELED
        assert seen[-1][0].status == TournamentStatus.CANCELED
        with pytest.raises(JoinNotAllowed, match="Tournament Canceled"):
            board.check_can_join(7)
        await board.stop()

    @pytest.mark.asyncio
    async def test_missed_active_still_reaches_completed(self, board, service):
        service.list_all.return_value = [make_tournament(7)]
        await board.refresh()
        service.list_all.return_value = [make_tournament(7, status=TournamentStatus.COMPLETED)]
        await board.refresh()
        assert board.get(7).status == TournamentStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_watch_unknown_raises(self, board):
        with pytest.raises(KeyError):
            await board.watch(99)

    @pytest.mark.asyncio
    async def test_observers_notified(self, board, service):
        seen = []
        board.on_change(seen.append)
        service.list_all.return_value = [make_tournament(7)]
        await board.refresh()
        assert [t.id for t in seen[-1]] == [7]

    @pytest.mark.asyncio
    async def test_poll_loop_survives_errors(self, board, service):
        calls = 0

        async def flaky():
            nonlocal calls
            calls += 1
            if calls == 1:
                raise RuntimeError("boom")
            return [make_tournament(7)]

        service.list_all.side_effect = flaky
        board.start()
        await asyncio.sleep(0.05)
        await board.stop()
        assert calls >= 2
        assert board.get(7) is not None


class TestJoin:
    @pytest_asyncio.fixture
    async def loaded(self, board, service):
        service.list_all.return_value = [make_tournament(7, current=9, maximum=10)]
        await board.refresh()
        return board

    @pytest.mark.asyncio
    async def test_second_join_blocked_when_full(self, loaded, service, contract):
        service.join.return_value = JoinReceipt(7, ADDRESS, current_players=10, max_players=10)
        service.list_all.return_value = [make_tournament(7, current=10, maximum=10)]

        receipt = await loaded.join(7)
        assert receipt.current_players == 10
        assert loaded.get(7).current_players == 10
        contract.join_tournament.assert_awaited_once_with(7, 10**16, ADDRESS)
        service.join.assert_awaited_once_with(7, ADDRESS)

        list_calls = service.list_all.await_count
        with pytest.raises(JoinNotAllowed, match="Tournament Full"):
            await loaded.join(7)

        assert contract.join_tournament.await_count == 1
        assert service.join.await_count == 1
        assert service.list_all.await_count == list_calls

    @pytest.mark.asyncio
    async def test_receipt_count_applied_before_refresh(self, loaded, service):
        # The refetch comes back empty (backend hiccup), the receipt still counts
        service.join.return_value = JoinReceipt(7, ADDRESS, current_players=10, max_players=10)
        service.list_all.return_value = []
        await loaded.join(7)
        with pytest.raises(JoinNotAllowed, match="Tournament Full"):
            await loaded.join(7)

    @pytest.mark.asyncio
    async def test_wallet_not_connected(self, loaded, session, contract):
        session.session = WalletSession()
        with pytest.raises(JoinNotAllowed, match="Wallet not connected"):
            await loaded.join(7)
        contract.join_tournament.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unknown_tournament(self, loaded, contract):
        with pytest.raises(JoinNotAllowed, match="Tournament not found"):
            await loaded.join(99)
        contract.join_tournament.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_lobby_closed(self, loaded, contract):
        loaded.clock = lambda: 1500
        with pytest.raises(JoinNotAllowed, match="Registration Closed"):
            await loaded.join(7)
        contract.join_tournament.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_already_started(self, loaded, contract):
        loaded.clock = lambda: 2500
        with pytest.raises(JoinNotAllowed, match="Tournament Already Started"):
            await loaded.join(7)

    @pytest.mark.asyncio
    async def test_terminal_tournament(self, board, service, contract):
        service.list_all.return_value = [make_tournament(7, status=TournamentStatus.CANCELED)]
        await board.refresh()
        with pytest.raises(JoinNotAllowed, match="Tournament Canceled"):
            await board.join(7)
        contract.join_tournament.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_wrong_chain(self, loaded, session, contract, service):
        session.require_chain.side_effect = ChainMismatch(97, 56)
        with pytest.raises(ChainMismatch):
            await loaded.join(7)
        contract.join_tournament.assert_not_awaited()
        service.join.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_payment_failure_skips_backend(self, loaded, contract, service):
        from cryptotourney.errors import UserRejection

        contract.join_tournament.side_effect = UserRejection("Transaction rejected by user")
        with pytest.raises(UserRejection):
            await loaded.join(7)
        service.join.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_join_updates_watched_view(self, loaded, service):
        view = await loaded.watch(7)
        service.join.return_value = JoinReceipt(7, ADDRESS, current_players=10, max_players=10)
        service.list_all.return_value = [make_tournament(7, current=10)]
        await loaded.join(7)
        assert view.tournament.current_players == 10


class TestOtherActions:
    @pytest.mark.asyncio
    async def test_enter(self, board, service):
        service.enter.return_value = True
        assert await board.enter(7) is True
        service.enter.assert_awaited_once_with(7, ADDRESS)

    @pytest.mark.asyncio
    async def test_enter_requires_wallet(self, board, session, service):
        session.session = WalletSession()
        with pytest.raises(JoinNotAllowed):
            await board.enter(7)
        service.enter.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_register(self, board, contract):
        contract.register_player.return_value = {"status": 1}
        assert await board.register("ann") == {"status": 1}
        contract.register_player.assert_awaited_once_with("ann", ADDRESS)

    @pytest.mark.asyncio
    async def test_register_without_contract(self, service, channel, session):
        from cryptotourney.errors import ContractError

        board = TournamentBoard(service, channel, session, contract=None)
        with pytest.raises(ContractError):
            await board.register("ann")


def test_tournament_values_are_replaced_not_mutated():
    t = make_tournament()
    updated = replace(t, current_players=10)
    assert t.current_players == 9
    assert updated.current_players == 10
