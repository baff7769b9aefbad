#!/usr/bin/env python3
"""
Dispersal CLI - Command Line Interface for Dispersal Runs
=========================================================

Provides:
- Pre-flight cost estimates
- Wallet hierarchy previews with optional key export
- A default configuration file
- Full runs: generate wallets, wait for the deposit, disperse, and
  optionally export landing keys and withdraw everything afterwards

Usage:
    dispersal estimate --paths 3 --min 0.1 --max 0.5
    dispersal generate --paths 2
    dispersal init-config
    dispersal run --paths 3 --withdraw-to 0x... --export landing_keys.txt
    dispersal run --paths 2 --dry-run --deposit 5
"""

import os
import sys
import json
import argparse
import threading
from pathlib import Path
from typing import Optional

from rich.console import Console
from rich.table import Table
from rich.panel import Panel
from rich import box

from .config import ConfigManager, DispersalConfig, DEFAULT_CONFIG
from .allocator import validate_bounds
from .fees import FeeModel, HOPS_PER_PATH
from .hierarchy import generate, export_landing_keys
from .ledger import Ledger, SimulatedLedger, Web3Ledger
from .models import HopStatus, Run, RunStatus, StatusSnapshot, slot_key, SEED_SLOT, LANDING_SLOT
from .orchestrator import CancellationToken, DispersalOrchestrator
from .sweep import withdraw_all
from .utils import logger, setup_logging, format_units, sanitize_error_message

console = Console()

STATUS_SYMBOLS = {
    HopStatus.PENDING: "[dim]⏳ pending[/dim]",
    HopStatus.IN_PROGRESS: "[yellow]🔄 in progress[/yellow]",
    HopStatus.COMPLETED: "[green]✅ completed[/green]",
    HopStatus.ERROR: "[red]❌ error[/red]",
}

RUN_STYLES = {
    RunStatus.DONE: "bold green",
    RunStatus.FAILED: "bold red",
    RunStatus.CANCELLED: "bold yellow",
}


def print_banner():
    """Print the CLI banner."""
    banner = """
    Wallet Dispersal Engine
    ═══════════════════════
    funding → 3 intermediates → landing
    """
    console.print(Panel(banner, style="bold cyan", box=box.DOUBLE))


def load_config(args) -> DispersalConfig:
    """Load the YAML config and apply command line overrides."""
    config = ConfigManager(Path(args.config)).load_config()
    overrides = {
        'rpc_url': getattr(args, 'rpc', None),
        'num_paths': getattr(args, 'paths', None),
        'min_amount': getattr(args, 'min', None),
        'max_amount': getattr(args, 'max', None),
    }
    data = config.to_dict()
    data.update({k: v for k, v in overrides.items() if v is not None})
    if getattr(args, 'dry_run', False):
        data['dry_run'] = True
    return DispersalConfig.from_dict(data)


def estimate_command(args):
    """Handle estimate command - show the advisory cost of a run."""
    config = load_config(args)
    fees = config.fee_model()
    paths = config.num_paths
    max_units = fees.to_units(config.max_amount)

    table = Table(title=f"Estimate for {paths} landing wallet(s)", box=box.ROUNDED)
    table.add_column("Item", style="cyan")
    table.add_column("Amount", style="green", justify="right")

    table.add_row("Transactions", str(fees.total_transaction_count(paths)))
    table.add_row("Fee per transfer", format_units(fees.fee_per_transfer, fees.decimals))
    table.add_row("Transfer fees", format_units(fees.total_fees(paths), fees.decimals))
    table.add_row("Reserve (funding + landing)", format_units(fees.reserve * (paths + 1), fees.decimals))
    table.add_row("Max random amounts", format_units(paths * max_units, fees.decimals))
    table.add_row(
        "[bold]Estimated total[/bold]",
        f"[bold]{format_units(fees.estimated_total_cost(paths, max_units), fees.decimals)}[/bold]"
    )
    console.print(table)


def init_config_command(args):
    """Handle init-config command - write the default configuration file."""
    path = Path(args.config)
    if ConfigManager(path).exists() and not args.force:
        console.print(f"[red]{path} already exists (use --force to overwrite)[/red]")
        return 1

    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(DEFAULT_CONFIG + "\n")
    os.chmod(path, 0o600)
    console.print(f"[green]✓ Default configuration written to {path}[/green]")
    return 0


def build_ledger(config: DispersalConfig) -> Optional[Ledger]:
    """Ledger for the configured mode, or None when it cannot carry a run."""
    if config.dry_run:
        return SimulatedLedger(fee_per_transaction=config.fee_per_transaction)

    if config.decimals != Web3Ledger.NATIVE_DECIMALS:
        console.print(
            f"[red]decimals is {config.decimals} but the node counts value in wei; "
            f"set decimals: {Web3Ledger.NATIVE_DECIMALS} in the config file[/red]"
        )
        return None

    ledger = Web3Ledger.from_config(config)
    if not ledger.is_connected():
        console.print(f"[red]Failed to connect to {config.rpc_url}[/red]")
        return None

    if ledger.fee_shortfall():
        network_fee = ledger.network_fee()
        console.print(
            f"[red]Fee budget below network gas price: a transfer costs {network_fee} wei "
            f"but fee_per_transfer is {config.fee_per_transfer}. "
            f"Raise fee_per_transaction to at least {network_fee - config.safety_buffer}.[/red]"
        )
        return None
    return ledger


def run_worker(orchestrator: DispersalOrchestrator):
    """Thread target: never let an unexpected error vanish with the thread."""
    try:
        orchestrator.execute()
    except Exception as e:
        message = sanitize_error_message(e)
        logger.exception(f"Dispersal aborted: {message}")
        orchestrator.state.fail(f"Error: Dispersal aborted: {message}")


class StatusPrinter:
    """Status feed listener: echo each new message once."""

    def __init__(self):
        self._last_message = None

    def __call__(self, snapshot: StatusSnapshot):
        if not snapshot.last_message or snapshot.last_message == self._last_message:
            return
        self._last_message = snapshot.last_message
        style = RUN_STYLES.get(snapshot.run_status, "white")
        if snapshot.last_message.startswith("Error"):
            style = "red"
        console.print(f"[{style}]{snapshot.last_message}[/{style}]")


def render_wallets(run: Run, fees: FeeModel):
    """Render every wallet with its latest known balance and status."""
    snapshot = run.state.snapshot()

    console.print(Panel(
        f"[bold]{run.funding.address}[/bold]\n"
        f"Status: {STATUS_SYMBOLS[snapshot.hop_statuses['funding']]}",
        title="Funding Wallet",
        box=box.ROUNDED,
    ))

    table = Table(title="Landing Paths", box=box.ROUNDED)
    table.add_column("#", style="cyan")
    table.add_column("Seed")
    for hop in range(1, HOPS_PER_PATH + 1):
        table.add_column(f"Intermediate {hop}")
    table.add_column("Landing")
    table.add_column("Landing Balance", justify="right")

    for path in run.paths:
        statuses = [
            STATUS_SYMBOLS[snapshot.hop_statuses[slot_key(path.index, slot)]]
            for slot in range(SEED_SLOT, LANDING_SLOT + 1)
        ]
        balance = snapshot.balances.get(path.landing.address)
        table.add_row(
            str(path.index + 1),
            *statuses,
            format_units(balance, fees.decimals) if balance is not None else "-",
        )
    console.print(table)

    addresses = Table(title="Landing Wallets", box=box.SIMPLE)
    addresses.add_column("#", style="cyan")
    addresses.add_column("Address", style="green")
    for path in run.paths:
        addresses.add_row(str(path.index + 1), path.landing.address)
    console.print(addresses)


def render_transfers(run: Run, fees: FeeModel, limit: int = 20):
    """Render the most recent transfer attempts of the run."""
    records = run.state.get_audit_trail(limit)
    if not records:
        return

    table = Table(title=f"Last {len(records)} Transfer(s)", box=box.SIMPLE)
    table.add_column("Action", style="cyan")
    table.add_column("Path")
    table.add_column("Hop")
    table.add_column("Amount", justify="right")
    table.add_column("Status")
    for record in records:
        style = {"SUCCESS": "green", "FAILED": "red"}.get(record.status, "dim")
        table.add_row(
            record.action,
            "-" if record.path_index is None else str(record.path_index + 1),
            "-" if record.hop is None else str(record.hop),
            format_units(record.amount, fees.decimals),
            f"[{style}]{record.status}[/{style}]",
        )
    console.print(table)


def save_audit_log(run: Run, audit_file: str):
    """Write every transfer record of the run as JSON."""
    audit_path = Path(audit_file)
    audit_path.parent.mkdir(parents=True, exist_ok=True)
    with open(audit_path, 'w') as f:
        json.dump([record.to_dict() for record in run.state.records], f, indent=2)
    console.print(f"[green]✓ Audit log written to: {audit_path}[/green]")


def export_keys(run: Run, export_file: str):
    export_path = Path(export_file)
    export_path.parent.mkdir(parents=True, exist_ok=True)
    export_path.write_text(export_landing_keys(run) + "\n")
    os.chmod(export_path, 0o600)
    console.print(f"[green]✓ Landing wallet keys exported to: {export_path}[/green]")
    console.print("[dim]  Keep this file secure - it contains plaintext keys[/dim]")


def generate_command(args):
    """Handle generate command - preview a fresh wallet hierarchy."""
    config = load_config(args)
    run = generate(config.num_paths)

    table = Table(title=f"Generated {run.intermediate_count + len(run.paths) + 1} wallets", box=box.ROUNDED)
    table.add_column("Wallet", style="cyan")
    table.add_column("Address", style="green")
    for account in run.accounts():
        table.add_row(account.label, account.address)
    console.print(table)

    if args.export:
        export_keys(run, args.export)
    else:
        console.print("[yellow]Keys were not saved; these wallets cannot be used after exit.[/yellow]")
    return 0


def run_command(args):
    """Handle run command - generate wallets and disperse a deposit."""
    print_banner()

    config = load_config(args)
    setup_logging(config.log_level, config.log_file, console_output=False)
    fees = config.fee_model()
    validate_bounds(config.num_paths, fees.to_units(config.min_amount), fees.to_units(config.max_amount))

    ledger = build_ledger(config)
    if ledger is None:
        return 1

    if args.withdraw_to and not ledger.validate_address(args.withdraw_to):
        console.print(f"[red]Invalid withdrawal address: {args.withdraw_to}[/red]")
        return 1

    run = generate(config.num_paths)
    run.state.subscribe(StatusPrinter())

    estimate = fees.estimated_total_cost(config.num_paths, fees.to_units(config.max_amount))
    console.print(Panel(
        f"Send funds to:\n[bold green]{run.funding.address}[/bold green]\n\n"
        f"Estimated total needed: [bold]{format_units(estimate, fees.decimals)}[/bold]",
        title="Funding Wallet",
        box=box.ROUNDED,
    ))

    if config.dry_run:
        deposit = fees.to_units(args.deposit) if args.deposit is not None else estimate * 2
        ledger.fund(run.funding.address, deposit)
        console.print(f"[yellow][DRY RUN] Simulated deposit of {format_units(deposit, fees.decimals)}[/yellow]")

    token = CancellationToken()
    orchestrator = DispersalOrchestrator(run, ledger, config, token=token)
    worker = threading.Thread(target=run_worker, args=(orchestrator,), name="dispersal", daemon=True)
    worker.start()

    try:
        while worker.is_alive():
            worker.join(timeout=0.5)
    except KeyboardInterrupt:
        console.print("\n[yellow]Cancelling after the current transfer...[/yellow]")
        token.cancel()
        worker.join()

    render_wallets(run, fees)
    render_transfers(run, fees)

    if args.export:
        export_keys(run, args.export)

    if args.withdraw_to:
        records = withdraw_all(run, args.withdraw_to, ledger, fees, config.hop_delay_seconds)

        table = Table(title="Withdrawal", box=box.ROUNDED)
        table.add_column("Wallet", style="cyan")
        table.add_column("Amount", justify="right")
        table.add_column("Status")
        for record in records:
            label = "Funding" if record.path_index is None else f"Landing {record.path_index + 1}"
            style = {"SUCCESS": "green", "FAILED": "red"}.get(record.status, "dim")
            table.add_row(label, format_units(record.amount, fees.decimals), f"[{style}]{record.status}[/{style}]")
        console.print(table)

    elif run.state.run_status == RunStatus.DONE and not args.export:
        console.print(
            "[yellow]Keys live only in this process. Re-run with --export or --withdraw-to "
            "to keep access to the landing wallets.[/yellow]"
        )

    if args.audit_log:
        save_audit_log(run, args.audit_log)

    if run.state.run_status != RunStatus.DONE:
        return 1
    # DONE with abandoned paths is a partial dispersal
    return 1 if any(run.state.path_failed(path.index) for path in run.paths) else 0


def main(argv=None):
    parser = argparse.ArgumentParser(
        description='Disperse one deposit through intermediate wallets to fresh landing wallets',
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        '--config',
        default='./dispersal_config.yaml',
        help='Path to YAML config (default: ./dispersal_config.yaml)'
    )
    parser.add_argument(
        '--rpc',
        help='RPC endpoint override'
    )

    subparsers = parser.add_subparsers(dest='command', help='Command to run')

    # Estimate command
    estimate_parser = subparsers.add_parser('estimate', help='Estimate the deposit a run needs')
    estimate_parser.add_argument('--paths', type=int, help='Number of landing wallets')
    estimate_parser.add_argument('--min', type=float, help='Minimum random amount per landing wallet')
    estimate_parser.add_argument('--max', type=float, help='Maximum random amount per landing wallet')

    # Generate command
    generate_parser = subparsers.add_parser('generate', help='Generate and show a wallet hierarchy')
    generate_parser.add_argument('--paths', type=int, help='Number of landing wallets')
    generate_parser.add_argument('--export', help='Write landing wallet keys (hex, one per line) to this file')

    # Init config command
    init_parser = subparsers.add_parser('init-config', help='Write the default configuration file')
    init_parser.add_argument('--force', action='store_true', help='Overwrite an existing file')

    # Run command
    run_parser = subparsers.add_parser('run', help='Generate wallets and disperse a deposit')
    run_parser.add_argument('--paths', type=int, help='Number of landing wallets')
    run_parser.add_argument('--min', type=float, help='Minimum random amount per landing wallet')
    run_parser.add_argument('--max', type=float, help='Maximum random amount per landing wallet')
    run_parser.add_argument('--withdraw-to', help='Sweep landing and funding wallets here when done')
    run_parser.add_argument('--export', help='Write landing wallet keys (hex, one per line) to this file')
    run_parser.add_argument('--audit-log', help='Write every transfer record of the run to this JSON file')
    run_parser.add_argument('--dry-run', action='store_true', help='Use an in-memory ledger')
    run_parser.add_argument('--deposit', type=float, help='Simulated deposit for --dry-run (native units)')

    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 1

    commands = {
        'estimate': estimate_command,
        'generate': generate_command,
        'init-config': init_config_command,
        'run': run_command,
    }

    try:
        return commands[args.command](args) or 0
    except ValueError as e:
        console.print(f"[red]Error: {e}[/red]")
        return 1


if __name__ == '__main__':
    sys.exit(main())
