"""
Percolator Keeper CLI
=====================
Command-line interface using Typer + Rich.

Commands:
    python cli_typer.py run
    python cli_typer.py discover
    python cli_typer.py decode <SLAB>
    python cli_typer.py scan <SLAB>
    python cli_typer.py set-oracle-authority <SLAB> <NEW_AUTHORITY>
"""

import asyncio
import signal
import sys
from typing import List, Optional

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from solders.pubkey import Pubkey

from config.settings import Settings
from src.percolator.errors import CircuitBreakerTrip, KeeperError
from src.percolator.slab.layout import TIER_LABELS

app = typer.Typer(
    name="percolator-keeper",
    help="Percolator Keeper - slab discovery, cranking and liquidations",
    add_completion=True,
    rich_markup_mode="rich",
)

console = Console()


def _pubkey(value: str) -> Pubkey:
    try:
        return Pubkey.from_string(value)
    except ValueError:
        console.print(f"[bold red]❌ Invalid pubkey: {value}[/bold red]")
        raise typer.Exit(2)


def _tier_label(snapshot) -> str:
    if snapshot.layout is None:
        return "?"
    return TIER_LABELS.get(snapshot.layout.max_accounts, str(snapshot.layout.max_accounts))


def _price(price_e6: int) -> str:
    return f"{price_e6 / 1_000_000:,.6f}" if price_e6 else "-"


# ═══════════════════════════════════════════════════════════════════════════════
# COMMAND: RUN (Standalone Keeper)
# ═══════════════════════════════════════════════════════════════════════════════

@app.command()
def run(
    no_liquidations: bool = typer.Option(
        False,
        "--no-liquidations",
        help="Crank only, skip liquidation sweeps",
    ),
):
    """
    Run the keeper until interrupted.

    Exits with status 1 when the circuit breaker trips.

    \b
    Examples:
        python cli_typer.py run
        python cli_typer.py run --no-liquidations
    """
    if no_liquidations:
        Settings.LIQUIDATION_ENABLED = False

    console.print(Panel.fit(
        f"[bold cyan]⚙️  Percolator Keeper[/bold cyan]\n"
        f"RPC: {Settings.RPC_URL.split('?')[0]}\n"
        f"Programs: {len(Settings.ALL_PROGRAM_IDS)} | "
        f"Interval: {Settings.CRANK_INTERVAL_MS}ms | "
        f"Liquidations: {'on' if Settings.LIQUIDATION_ENABLED else 'off'}",
        border_style="cyan",
    ))

    try:
        asyncio.run(_run_keeper())
    except CircuitBreakerTrip as e:
        console.print(f"[bold red]🛑 {e}[/bold red]")
        raise typer.Exit(1)
    except KeeperError as e:
        console.print(f"[bold red]❌ {e}[/bold red]")
        raise typer.Exit(1)


async def _run_keeper() -> None:
    from src.engine.keeper_factory import build_keeper
    from src.shared.system.logging import Logger

    Logger.section("Percolator Keeper")
    components = build_keeper()
    orchestrator = components.orchestrator

    loop = asyncio.get_running_loop()
    if sys.platform != "win32":
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, orchestrator.stop)

    try:
        await orchestrator.run_forever()
    finally:
        await components.close()
        console.print(f"[dim]Final stats: {orchestrator.get_stats()}[/dim]")


# ═══════════════════════════════════════════════════════════════════════════════
# COMMAND: DISCOVER
# ═══════════════════════════════════════════════════════════════════════════════

@app.command()
def discover(
    program: Optional[List[str]] = typer.Option(
        None,
        "--program",
        "-p",
        help="Program id to scan (repeatable, defaults to ALL_PROGRAM_IDS)",
    ),
):
    """
    List every slab owned by the configured programs.
    """
    program_ids = [_pubkey(p) for p in (program or Settings.ALL_PROGRAM_IDS)]

    async def run_discover():
        from src.engine.keeper_factory import build_discovery, build_rpc

        rpc = build_rpc()
        try:
            return await build_discovery(rpc).discover(program_ids)
        finally:
            await rpc.close()

    result = asyncio.run(run_discover())

    table = Table(title=f"Markets ({len(result.markets)})")
    table.add_column("Slab", style="cyan")
    table.add_column("Program")
    table.add_column("Tier")
    table.add_column("Oracle")
    table.add_column("Price", justify="right")
    table.add_column("Accounts", justify="right")
    table.add_column("Last crank slot", justify="right")

    for snap in result.markets:
        table.add_row(
            str(snap.slab_address),
            str(snap.program_id)[:8],
            _tier_label(snap),
            "admin" if snap.config.is_admin_oracle else "pyth",
            _price(snap.config.oracle_price_e6),
            str(snap.engine.num_used_accounts),
            str(snap.engine.last_crank_slot),
        )
    console.print(table)

    for program_id, error in result.failed_programs.items():
        console.print(f"[yellow]⚠️  {program_id[:8]}: {error}[/yellow]")
    if result.failed_programs and not result.markets:
        raise typer.Exit(1)


# ═══════════════════════════════════════════════════════════════════════════════
# COMMAND: DECODE / SCAN (Single Slab)
# ═══════════════════════════════════════════════════════════════════════════════

def _fetch(slab: Pubkey):
    async def run_fetch():
        from src.engine.keeper_factory import build_rpc
        from src.percolator.discovery import fetch_snapshot

        rpc = build_rpc()
        try:
            await rpc.throttle(read_only=True)
            return await fetch_snapshot(rpc.read_only, slab)
        finally:
            await rpc.close()

    try:
        return asyncio.run(run_fetch())
    except KeeperError as e:
        console.print(f"[bold red]❌ {e}[/bold red]")
        raise typer.Exit(1)


@app.command()
def decode(slab: str = typer.Argument(..., help="Slab account address")):
    """
    Decode and print a slab's header, config and engine state.
    """
    snap = _fetch(_pubkey(slab))
    header, cfg, params, engine = snap.header, snap.config, snap.params, snap.engine

    console.print(Panel.fit(
        f"[bold]Slab[/bold] {snap.slab_address}\n"
        f"Program: {snap.program_id} | Tier: {_tier_label(snap)} | Version: {header.version}\n"
        f"Admin: {header.admin} | Resolved: {header.resolved} | Nonce: {header.nonce}",
        title="Header",
        border_style="cyan",
    ))
    console.print(Panel.fit(
        f"Collateral: {cfg.collateral_mint}\n"
        f"Vault: {cfg.vault_pubkey}\n"
        f"Oracle: {'admin ' + str(cfg.oracle_authority) if cfg.is_admin_oracle else 'pyth ' + cfg.index_feed_hex}\n"
        f"Price: {_price(cfg.oracle_price_e6)} | Staleness: {cfg.max_staleness_secs}s | "
        f"Invert: {cfg.invert} | Unit scale: {cfg.unit_scale}",
        title="Config",
        border_style="blue",
    ))
    console.print(Panel.fit(
        f"Maintenance margin: {params.maintenance_margin_bps} bps | "
        f"Initial margin: {params.initial_margin_bps} bps | "
        f"Trading fee: {params.trading_fee_bps} bps\n"
        f"Vault: {engine.vault} | Insurance: {engine.insurance_fund.balance}\n"
        f"Open interest: {engine.total_open_interest} | Accounts: {engine.num_used_accounts}\n"
        f"Current slot: {engine.current_slot} | Last crank slot: {engine.last_crank_slot}\n"
        f"Lifetime liquidations: {engine.lifetime_liquidations}",
        title="Engine",
        border_style="green",
    ))


@app.command()
def scan(slab: str = typer.Argument(..., help="Slab account address")):
    """
    List liquidation candidates in one slab (read-only, nothing is sent).
    """
    from src.percolator.liquidation import LiquidationScanner

    snap = _fetch(_pubkey(slab))
    try:
        candidates = LiquidationScanner().scan(snap)
    except KeeperError as e:
        console.print(f"[bold red]❌ {e}[/bold red]")
        raise typer.Exit(1)

    if not candidates:
        console.print("[green]✅ No liquidation candidates[/green]")
        return

    table = Table(title=f"Liquidation candidates ({len(candidates)})")
    table.add_column("Idx", justify="right")
    table.add_column("Owner", style="cyan")
    table.add_column("Position", justify="right")
    table.add_column("Capital", justify="right")
    table.add_column("PnL", justify="right")
    table.add_column("Status")
    table.add_column("Ratio / MM (bps)", justify="right")
    for c in candidates:
        ratio = "-" if c.margin_ratio_bps is None else str(c.margin_ratio_bps)
        table.add_row(
            str(c.account_idx),
            str(c.owner),
            str(c.position_size),
            str(c.capital),
            str(c.pnl),
            c.status.value,
            f"{ratio} / {c.maintenance_margin_bps}",
        )
    console.print(table)


# ═══════════════════════════════════════════════════════════════════════════════
# COMMAND: SET-ORACLE-AUTHORITY (Admin)
# ═══════════════════════════════════════════════════════════════════════════════

@app.command("set-oracle-authority")
def set_oracle_authority(
    slab: str = typer.Argument(..., help="Slab account address"),
    new_authority: str = typer.Argument(..., help="New oracle authority (default pubkey disables admin oracle)"),
    admin_keypair: Optional[str] = typer.Option(
        None,
        "--admin-keypair",
        help="Admin signer (defaults to CRANK_KEYPAIR)",
    ),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
):
    """
    Point a market's oracle authority at a new key.

    [bold red]⚠️  Sends a real admin transaction.[/bold red]
    """
    slab_key = _pubkey(slab)
    new_key = _pubkey(new_authority)

    if not yes and not typer.confirm(f"Set oracle authority of {slab} to {new_authority}?", default=False):
        console.print("[yellow]Aborted.[/yellow]")
        raise typer.Exit(0)

    async def run_set():
        from src.engine.keeper_factory import build_rpc, build_submitter
        from src.percolator.discovery import fetch_snapshot
        from src.percolator.instructions import KeeperInstructions, load_encoder

        instructions = KeeperInstructions(load_encoder(Settings.KEEPER_INSTRUCTION_ENCODER))
        rpc = build_rpc()
        try:
            submitter = build_submitter(rpc, admin_keypair)
            snapshot = await fetch_snapshot(rpc.read_only, slab_key)
            if snapshot.header.admin != submitter.payer:
                raise KeeperError(f"Signer {submitter.payer} is not the slab admin {snapshot.header.admin}")
            ix = instructions.set_oracle_authority(snapshot, submitter.payer, new_key)
            return await submitter.submit(ix)
        finally:
            await rpc.close()

    try:
        result = asyncio.run(run_set())
    except (KeeperError, ValueError) as e:
        console.print(f"[bold red]❌ {e}[/bold red]")
        raise typer.Exit(1)
    console.print(f"[green]✅ Oracle authority updated: {result.signature}[/green]")


# ═══════════════════════════════════════════════════════════════════════════════
# MAIN ENTRY POINT
# ═══════════════════════════════════════════════════════════════════════════════

def main():
    """Entry point for CLI."""
    try:
        app()
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted by user.[/yellow]")
        sys.exit(0)


if __name__ == "__main__":
    # Windows async event loop fix
    if sys.platform == 'win32':
        asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())

    main()
