#!/usr/bin/env python3
"""
cryptotourney/cli.py - Command line interface for CryptoTournaments

Usage:
    cryptotourney list [--active]
    cryptotourney show <id>
    cryptotourney players <id>
    cryptotourney watch <id>
    cryptotourney join <id>
    cryptotourney enter <id>
    cryptotourney register <username>
    cryptotourney wallet {generate,connect,status,disconnect,switch}
"""

import argparse
import asyncio
import logging
import sys
from datetime import datetime
from pathlib import Path

from rich.console import Console
from rich.table import Table

from .client import TournamentClient
from .config import CONFIG_PATH, load_config
from .errors import TourneyError
from .models import Tournament, TournamentStatus
from .wallet import format_ether, generate_wallet

# Set up logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger(__name__)

console = Console()

STATUS_STYLES = {
    TournamentStatus.CREATED: "cyan",
    TournamentStatus.ACTIVE: "green",
    TournamentStatus.COMPLETED: "dim",
    TournamentStatus.CANCELED: "red",
}


def _fmt_time(epoch: int) -> str:
    return datetime.fromtimestamp(epoch).strftime("%Y-%m-%d %H:%M")


def _client(args) -> TournamentClient:
    config = load_config(Path(args.config) if args.config else None)
    if args.api:
        config.api.base_url = args.api
    return TournamentClient(config)


async def _start_with_wallet(client: TournamentClient) -> None:
    """Load the board once and make sure the wallet session is connected."""
    await client.start(poll=False)
    if not client.session.is_connected:
        await client.session.connect()


def _tournament_table(tournaments: list[Tournament], title: str) -> Table:
    table = Table(title=title)
    table.add_column("ID", justify="right")
    table.add_column("Name")
    table.add_column("Status")
    table.add_column("Players", justify="right")
    table.add_column("Entry Fee", justify="right")
    table.add_column("Lobby Closes")
    table.add_column("Starts")

    for t in tournaments:
        style = STATUS_STYLES.get(t.status, "")
        table.add_row(
            str(t.id),
            t.name,
            f"[{style}]{t.status.name}[/{style}]" if style else t.status.name,
            f"{t.current_players}/{t.max_players}",
            format_ether(t.entry_fee),
            _fmt_time(t.lobby_close_time),
            _fmt_time(t.start_time),
        )
    return table


def _players_table(view_players, title: str) -> Table:
    table = Table(title=title)
    table.add_column("#", justify="right")
    table.add_column("Player")
    table.add_column("Address")
    table.add_column("Score", justify="right")
    for i, p in enumerate(view_players, 1):
        table.add_row(str(i), p.display_name, p.address, str(p.score))
    return table


# ============================================================================
# Tournament commands
# ============================================================================


async def _list(args) -> int:
    async with _client(args) as client:
        if args.active:
            tournaments = await client.service.list_active()
        else:
            tournaments = await client.service.list_all()

    if not tournaments:
        console.print("No tournaments found.")
        return 0
    console.print(_tournament_table(tournaments, "Active Tournaments" if args.active else "Tournaments"))
    return 0


def cmd_list(args):
    """List tournaments."""
    return asyncio.run(_list(args))


async def _show(args) -> int:
    async with _client(args) as client:
        tournament = await client.service.get_by_id(args.id)
    if tournament is None:
        logger.error(f"Tournament {args.id} not found")
        return 1

    console.print(f"\n[bold]{tournament.name}[/bold] (#{tournament.id})")
    console.print(f"   Status: {tournament.status.name}")
    console.print(f"   Players: {tournament.current_players}/{tournament.max_players}")
    console.print(f"   Entry fee: {format_ether(tournament.entry_fee)}")
    console.print(f"   Lobby closes: {_fmt_time(tournament.lobby_close_time)}")
    console.print(f"   Starts: {_fmt_time(tournament.start_time)}")
    console.print(f"   Ends: {_fmt_time(tournament.end_time)}")
    if tournament.winners:
        console.print(f"   Winners: {', '.join(tournament.winners)}")
    console.print()
    return 0


def cmd_show(args):
    """Show one tournament."""
    return asyncio.run(_show(args))


async def _players(args) -> int:
    async with _client(args) as client:
        try:
            result = await client.service.get_players(args.id)
        except TourneyError as e:
            logger.error(f"Failed to fetch players: {e}")
            return 1
    if not result.players:
        console.print("No players yet.")
        return 0
    console.print(_players_table(result.ranked(), f"Tournament {args.id} players"))
    return 0


def cmd_players(args):
    """Show a tournament's player board."""
    return asyncio.run(_players(args))


async def _watch(args) -> int:
    async with _client(args) as client:
        await client.board.refresh()
        if client.board.get(args.id) is None:
            logger.error(f"Tournament {args.id} not found")
            return 1

        finished = asyncio.Event()

        def on_change(view):
            console.print(_players_table(view.ranked_players(), f"{view.tournament.name} [{view.tournament.status.name}]"))
            if view.tournament.is_terminal:
                finished.set()

        client.board.start()
        view = await client.board.watch(args.id)
        view.on_change(on_change)
        on_change(view)
        if not view.subscribed:
            console.print("Tournament has not started; waiting for it to go live (Ctrl+C to stop).")

        try:
            await finished.wait()
            await view.settle()
        finally:
            await client.board.unwatch(args.id)
    return 0


def cmd_watch(args):
    """Follow a tournament's live scores until it finishes."""
    try:
        return asyncio.run(_watch(args))
    except KeyboardInterrupt:
        return 0


async def _join(args) -> int:
    async with _client(args) as client:
        await _start_with_wallet(client)
        if not client.session.is_connected:
            logger.error(f"Wallet not connected: {client.session.session.error}")
            return 1
        try:
            receipt = await client.board.join(args.id)
        except TourneyError as e:
            logger.error(f"Join failed: {e}")
            return 1
    console.print(f"Joined tournament {receipt.tournament_id} ({receipt.current_players}/{receipt.max_players})")
    return 0


def cmd_join(args):
    """Pay the entry fee and join a tournament."""
    return asyncio.run(_join(args))


async def _enter(args) -> int:
    async with _client(args) as client:
        await _start_with_wallet(client)
        try:
            entered = await client.board.enter(args.id)
        except TourneyError as e:
            logger.error(f"Enter failed: {e}")
            return 1
    if not entered:
        logger.error(f"Backend refused entry to tournament {args.id}")
        return 1
    console.print(f"Entered tournament {args.id}")
    return 0


def cmd_enter(args):
    """Enter a running tournament's game."""
    return asyncio.run(_enter(args))


async def _register(args) -> int:
    async with _client(args) as client:
        await _start_with_wallet(client)
        try:
            receipt = await client.board.register(args.username)
        except TourneyError as e:
            logger.error(f"Registration failed: {e}")
            return 1
    console.print(f"Registered as {args.username} (tx {receipt.get('transactionHash')})")
    return 0


def cmd_register(args):
    """Register the wallet as a player on-chain."""
    return asyncio.run(_register(args))


# ============================================================================
# Wallet commands
# ============================================================================


def cmd_wallet_generate(args):
    """Generate a new signing key."""
    address, private_key = generate_wallet()
    config_path = Path(args.config) if args.config else CONFIG_PATH
    console.print(f"\nAddress:     {address}")
    console.print(f"Private key: {private_key}")
    console.print(f"\nAdd it to {config_path}:\n")
    console.print("    [wallet]")
    console.print(f'    address = "{address}"')
    console.print(f'    private_key = "{private_key}"\n')
    return 0


def _print_session(session) -> None:
    console.print(f"State:   {session.state.value}")
    if session.address:
        console.print(f"Address: {session.address}")
        console.print(f"Chain:   {session.chain_id}")
        console.print(f"Balance: {session.balance}")
    if session.error:
        console.print(f"[yellow]{session.error}[/yellow]")


async def _wallet_connect(args) -> int:
    async with _client(args) as client:
        session = await client.session.connect()
    _print_session(session)
    return 0 if session.address else 1


async def _wallet_status(args) -> int:
    async with _client(args) as client:
        session = await client.session.start()
    _print_session(session)
    return 0


async def _wallet_disconnect(args) -> int:
    async with _client(args) as client:
        client.session.disconnect()
    console.print("Wallet disconnected.")
    return 0


async def _wallet_switch(args) -> int:
    async with _client(args) as client:
        await client.session.start()
        try:
            await client.session.switch_network()
        except TourneyError as e:
            logger.error(f"Network switch failed: {e}")
            return 1
        session = await client.session.connect()
    _print_session(session)
    return 0 if session.chain_id == client.config.chain.chain_id else 1


WALLET_COMMANDS = {
    "connect": _wallet_connect,
    "status": _wallet_status,
    "disconnect": _wallet_disconnect,
    "switch": _wallet_switch,
}


def cmd_wallet(args):
    """Manage the wallet session."""
    if args.action == "generate":
        return cmd_wallet_generate(args)
    return asyncio.run(WALLET_COMMANDS[args.action](args))


def main():
    parser = argparse.ArgumentParser(
        prog="cryptotourney",
        description="Join and follow CryptoTournaments from the terminal",
    )
    parser.add_argument("--config", default=None, help=f"Config file (default: {CONFIG_PATH})")
    parser.add_argument("--api", default=None, help="Backend URL (overrides config)")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")
    subparsers = parser.add_subparsers(dest="command", required=True)

    # list command
    list_parser = subparsers.add_parser("list", help="List tournaments")
    list_parser.add_argument("--active", action="store_true", help="Only active tournaments")
    list_parser.set_defaults(func=cmd_list)

    # show command
    show_parser = subparsers.add_parser("show", help="Show a tournament")
    show_parser.add_argument("id", type=int, help="Tournament ID")
    show_parser.set_defaults(func=cmd_show)

    # players command
    players_parser = subparsers.add_parser("players", help="Show a tournament's players")
    players_parser.add_argument("id", type=int, help="Tournament ID")
    players_parser.set_defaults(func=cmd_players)

    # watch command
    watch_parser = subparsers.add_parser("watch", help="Follow live scores")
    watch_parser.add_argument("id", type=int, help="Tournament ID")
    watch_parser.set_defaults(func=cmd_watch)

    # join command
    join_parser = subparsers.add_parser("join", help="Pay the entry fee and join")
    join_parser.add_argument("id", type=int, help="Tournament ID")
    join_parser.set_defaults(func=cmd_join)

    # enter command
    enter_parser = subparsers.add_parser("enter", help="Enter a running tournament")
    enter_parser.add_argument("id", type=int, help="Tournament ID")
    enter_parser.set_defaults(func=cmd_enter)

    # register command
    register_parser = subparsers.add_parser("register", help="Register as a player on-chain")
    register_parser.add_argument("username", help="Player name")
    register_parser.set_defaults(func=cmd_register)

    # wallet command
    wallet_parser = subparsers.add_parser("wallet", help="Manage the wallet session")
    wallet_parser.add_argument(
        "action", choices=["generate", *WALLET_COMMANDS], help="Wallet action",
    )
    wallet_parser.set_defaults(func=cmd_wallet)

    args = parser.parse_args()
    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)
    sys.exit(args.func(args))


if __name__ == "__main__":
    main()
