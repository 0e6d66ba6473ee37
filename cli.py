#!/usr/bin/env python3
"""
TAO Disburse — CLI for batched payouts on the Bittensor network.

Usage:
    tao-disburse transfer --wallet <name> --file <path> [--network <net>] [--batch-size <n>]
                          [--max-retries <n>] [--retry-delay <s>] [--dry-run]
    tao-disburse retry --wallet <name> [--batch <n>] [--max-retries <n>]
    tao-disburse failures [--ledger-dir <dir>]
    tao-disburse validate --file <path>
    tao-disburse generate-template --output <path> [--format csv|json] [--count <n>]

Examples:
    # Send to every recipient in a CSV file, 400 per extrinsic (testnet)
    tao-disburse transfer --wallet my_wallet --file recipients.csv --network test --batch-size 400

    # Retry all batches that failed in earlier runs
    tao-disburse retry --wallet my_wallet

    # Retry only batch #2
    tao-disburse retry --wallet my_wallet --batch 2

Settings can also come from the environment or a .env file
(TAO_DISBURSE_WALLET, TAO_DISBURSE_NETWORK, TAO_DISBURSE_LEDGER_DIR,
TAO_DISBURSE_BATCH_SIZE, TAO_DISBURSE_MAX_RETRIES, TAO_DISBURSE_RETRY_DELAY,
TAO_DISBURSE_RECIPIENTS_FILE). Command-line flags win.

Exit status: 0 when every batch settled, 1 when a batch is left in the
failure store (or a retry target was not found), 2 on configuration or
ledger errors.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path

from bittensor.utils.balance import Balance

from tao_disburse import __version__
from tao_disburse.batch import Batch, split_batches
from tao_disburse.builder import SubtensorTransactionBuilder
from tao_disburse.clock import SystemClock
from tao_disburse.engine import ALL_OUTSTANDING, DispatchEngine
from tao_disburse.errors import ConfigurationError, DispatchError
from tao_disburse.ledger import FileLedger
from tao_disburse.log import configure_logging
from tao_disburse.recipients import parse_recipients, total_amount, validate_recipients
from tao_disburse.settings import DispatchSettings, NetworkSettings, load_settings

EXIT_OK = 0
EXIT_BATCH_FAILED = 1
EXIT_CONFIG_ERROR = 2

PREVIEW_COUNT = 5

BANNER = r"""
  _____  _    ___    ___  _     _
 |_   _|/_\  / _ \  |   \(_)___| |__ _  _ _ _ ___ ___
   | | / _ \| (_) | | |) | (_-< '_ \ || | '_(_-</ -_)
   |_|/_/ \_\\___/  |___/|_/__/_.__/\_,_|_| /__/\___|
  Batched payouts for Bittensor
"""


def _settings_from_args(args: argparse.Namespace) -> tuple[DispatchSettings, NetworkSettings]:
    dispatch, network = load_settings(getattr(args, "env_file", None))
    dispatch = dispatch.with_overrides(
        batch_size=getattr(args, "batch_size", None),
        max_retries=getattr(args, "max_retries", None),
        retry_delay=getattr(args, "retry_delay", None),
    )
    file_arg = getattr(args, "file", None)
    ledger_arg = getattr(args, "ledger_dir", None)
    network = network.with_overrides(
        wallet=getattr(args, "wallet", None),
        network=getattr(args, "network", None),
        ledger_dir=Path(ledger_arg) if ledger_arg else None,
        recipients_file=Path(file_arg) if file_arg else None,
    )
    return dispatch, network


def _make_builder(args: argparse.Namespace, network: NetworkSettings) -> SubtensorTransactionBuilder:
    if not network.wallet:
        raise ConfigurationError("No wallet given (use --wallet or TAO_DISBURSE_WALLET)")
    return SubtensorTransactionBuilder(
        wallet_name=network.wallet,
        network=network.network,
        keep_alive=not getattr(args, "allow_death", False),
        wait_for_finalization=getattr(args, "finalize", False),
    )


def print_batch_preview(batch: Batch) -> None:
    """Show the first and last few recipients of a batch."""
    print(f"\n--- Batch #{batch.number} ({len(batch)} recipients) ---")
    recipients = batch.recipients
    if len(recipients) <= PREVIEW_COUNT * 2:
        shown = list(enumerate(recipients))
        skipped = 0
    else:
        shown = list(enumerate(recipients[:PREVIEW_COUNT]))
        shown += [
            (len(recipients) - PREVIEW_COUNT + i, r)
            for i, r in enumerate(recipients[-PREVIEW_COUNT:])
        ]
        skipped = len(recipients) - PREVIEW_COUNT * 2

    for position, (index, r) in enumerate(shown):
        if skipped and position == PREVIEW_COUNT:
            print(f"   ... ({skipped} more recipients) ...")
        label = f" ({r.label})" if r.label else ""
        print(f"   {index + 1}. {r.address} - {r.amount_tao}{label}")
    print(f"   Batch total: {Balance.from_rao(batch.total)}")


async def _preview(args, recipients, dispatch: DispatchSettings, network: NetworkSettings) -> int:
    batches = split_batches(recipients, dispatch.batch_size)
    async with _make_builder(args, network) as builder:
        sender = builder.get_sender_address()
        balance = await builder.get_sender_balance()
    print(f"Sender: {sender}")
    print(f"Balance: {Balance.from_rao(balance)}")
    for batch in batches:
        print_batch_preview(batch)
    required = total_amount(recipients)
    status = "SUFFICIENT" if balance >= required else "INSUFFICIENT"
    print(f"\n{len(batches)} batch transactions needed. Balance: {status}")
    return EXIT_OK


async def _transfer(args, recipients, dispatch: DispatchSettings, network: NetworkSettings) -> int:
    ledger = FileLedger(network.ledger_dir)
    async with _make_builder(args, network) as builder:
        builder.unlock()
        engine = DispatchEngine(builder, ledger, dispatch, clock=SystemClock())
        sender = builder.get_sender_address()
        print(f"Sender: {sender}")

        for batch in split_batches(recipients, dispatch.batch_size):
            print_batch_preview(batch)

        print(
            f"\nProcessing {len(recipients)} recipients in batches of {dispatch.batch_size} "
            f"(max retries: {dispatch.max_retries}, retry delay: {dispatch.retry_delay}s)..."
        )
        results = await engine.dispatch(recipients, sender=sender)

    print()
    for result in results:
        print(result.summary())
        print()

    failed = [r for r in results if not r.success]
    print("--- Transaction Summary ---")
    print(f"Batches settled: {len(results) - len(failed)}/{len(results)}")
    print(f"Transaction hashes saved to: {ledger.settlement_log_path}")
    if failed:
        print(f"WARNING: {len(failed)}/{len(results)} batches failed!")
        print(f"Failed batches saved to: {ledger.failure_store_path}")
        print("Run 'tao-disburse retry' to retry them.")
        return EXIT_BATCH_FAILED
    print("All batches completed successfully!")
    return EXIT_OK


def cmd_transfer(args: argparse.Namespace) -> int:
    """Split the recipient list into batches and send them."""
    print(BANNER)

    try:
        dispatch, network = _settings_from_args(args)
        dispatch.validate()
        if network.recipients_file is None:
            raise ConfigurationError("No recipient file given (use --file)")
        recipients = parse_recipients(network.recipients_file)
    except DispatchError as e:
        print(f"Configuration error: {e}")
        return EXIT_CONFIG_ERROR
    except (OSError, ValueError) as e:
        print(f"Error parsing file: {e}")
        return EXIT_CONFIG_ERROR

    if not recipients:
        print("Error: No recipients found in file")
        return EXIT_CONFIG_ERROR

    print(f"Loaded {len(recipients)} recipients from {network.recipients_file}")
    print(f"Network: {network.network}")
    print(f"Wallet: {network.wallet}")

    is_valid, errors = validate_recipients(recipients)
    if not is_valid:
        print("Validation errors:")
        for err in errors:
            print(f"  ✗ {err}")
        return EXIT_CONFIG_ERROR

    total = total_amount(recipients)
    print(f"Total to transfer: {Balance.from_rao(total)} across {len(recipients)} recipients")

    try:
        if args.dry_run:
            print("\n[DRY RUN] Previewing batches without sending...")
            return asyncio.run(_preview(args, recipients, dispatch, network))

        if not args.yes:
            response = input(f"\nProceed with transfer of {Balance.from_rao(total)}? [y/N]: ")
            if response.lower() not in ("y", "yes"):
                print("Aborted.")
                return EXIT_OK

        return asyncio.run(_transfer(args, recipients, dispatch, network))
    except DispatchError as e:
        print(f"Error ({e.kind.value}): {e}")
        return EXIT_CONFIG_ERROR


async def _retry(args, dispatch: DispatchSettings, network: NetworkSettings) -> int:
    ledger = FileLedger(network.ledger_dir)
    async with _make_builder(args, network) as builder:
        builder.unlock()
        engine = DispatchEngine(builder, ledger, dispatch, clock=SystemClock())
        selector = args.batch if args.batch is not None else ALL_OUTSTANDING
        outcomes = await engine.resume(selector, max_retries=dispatch.max_retries)

    for outcome in outcomes:
        print(f"Batch #{outcome.batch_number}: {outcome.status.value.upper()} — {outcome.message}")
        if outcome.tx_hash:
            print(f"  Transaction hash: {outcome.tx_hash}")

    settled = sum(1 for o in outcomes if o.success)
    print(f"\nRetry summary: {settled} succeeded, {len(outcomes) - settled} failed")
    return EXIT_OK if settled == len(outcomes) else EXIT_BATCH_FAILED


def _report_unreadable_store(ledger: FileLedger) -> int:
    print(f"Failure store {ledger.failure_store_path} is unreadable")
    print(f"It will be copied to {ledger.corrupt_backup_pattern} before the next write")
    print("Inspect or repair it before retrying")
    return EXIT_BATCH_FAILED


def cmd_retry(args: argparse.Namespace) -> int:
    """Retry batches recorded in the failure store."""
    print(BANNER)

    try:
        dispatch, network = _settings_from_args(args)
        dispatch.validate()
    except DispatchError as e:
        print(f"Configuration error: {e}")
        return EXIT_CONFIG_ERROR

    ledger = FileLedger(network.ledger_dir)
    if args.batch is not None:
        record = ledger.get_failure(args.batch)
        if ledger.store_unreadable:
            return _report_unreadable_store(ledger)
        if record is None:
            print(f"Batch #{args.batch} not found in failed batches")
            return EXIT_BATCH_FAILED
        print(f"Retrying batch #{args.batch}...")
    else:
        outstanding = ledger.load_failures()
        if ledger.store_unreadable:
            return _report_unreadable_store(ledger)
        if not outstanding:
            print("No failed batches to retry")
            return EXIT_OK
        print(f"Found {len(outstanding)} failed batches to retry")

    try:
        return asyncio.run(_retry(args, dispatch, network))
    except DispatchError as e:
        print(f"Error ({e.kind.value}): {e}")
        return EXIT_CONFIG_ERROR


def cmd_failures(args: argparse.Namespace) -> int:
    """List outstanding failed batches."""
    try:
        _, network = _settings_from_args(args)
    except DispatchError as e:
        print(f"Configuration error: {e}")
        return EXIT_CONFIG_ERROR

    ledger = FileLedger(network.ledger_dir)
    records = ledger.load_failures()
    if ledger.store_unreadable:
        return _report_unreadable_store(ledger)
    if not records:
        print("No failed batches outstanding")
        return EXIT_OK

    print(f"{len(records)} failed batches outstanding in {ledger.failure_store_path}:")
    for record in records:
        total = Balance.from_rao(total_amount(record.recipients))
        print(
            f"  Batch #{record.batch_number}: {len(record.recipients)} recipients, "
            f"{total}, at {record.timestamp.isoformat()}"
        )
        print(f"    {record.error}")
    return EXIT_OK


def cmd_validate(args: argparse.Namespace) -> int:
    """Validate a recipient list."""
    print(BANNER)

    try:
        recipients = parse_recipients(args.file)
    except (OSError, ValueError) as e:
        print(f"Error parsing file: {e}")
        return EXIT_CONFIG_ERROR

    print(f"Loaded {len(recipients)} recipients from {args.file}")
    if not recipients:
        print("\n✗ No recipients found")
        return EXIT_CONFIG_ERROR

    is_valid, errors = validate_recipients(recipients)

    if is_valid:
        total = total_amount(recipients)
        print(f"\n✓ All {len(recipients)} recipients are valid")
        print(f"  Total amount: {Balance.from_rao(total)}")
        print(f"  Average per recipient: {Balance.from_rao(total // len(recipients))}")
        print(f"  Min: {Balance.from_rao(min(r.amount for r in recipients))}")
        print(f"  Max: {Balance.from_rao(max(r.amount for r in recipients))}")

        print(f"\nPreview (first {PREVIEW_COUNT}):")
        for r in recipients[:PREVIEW_COUNT]:
            label = f" ({r.label})" if r.label else ""
            print(f"  {r.address[:16]}...{r.address[-8:]} → {r.amount_tao}{label}")
        if len(recipients) > PREVIEW_COUNT:
            print(f"  ... and {len(recipients) - PREVIEW_COUNT} more")

        return EXIT_OK
    else:
        print(f"\n✗ Found {len(errors)} validation errors:")
        for err in errors:
            print(f"  ✗ {err}")
        return EXIT_CONFIG_ERROR


def cmd_generate_template(args: argparse.Namespace) -> int:
    """Generate a template recipient file."""
    print(BANNER)

    count = args.count
    output = Path(args.output)

    # Well-known Substrate development addresses
    sample_addresses = [
        "5GrwvaEF5zXb26Fz9rcQpDWS57CtERHpNehXCPcNoHGKutQY",  # Alice
        "5FHneW46xGXgs5mUiveU4sbTyGBzmstUspZC92UhjJM694ty",  # Bob
        "5FLSigC9HGRKVhB9FiEo4Y3koPsNmBmLJbpXg2mp1hXcS59Y",  # Charlie
        "5DAAnrj7VHTznn2AWBemMuyBwZWs6FNFjdyVXUeYum3PTXFy",  # Dave
        "5HGjWAeFDfFCWPsjFQdVV2Msvz2XtMktvgocEZcCj68kUMaw",  # Eve
    ]

    recipients = []
    labels = ["Alice", "Bob", "Charlie", "Dave", "Eve"]
    for i in range(count):
        addr = sample_addresses[i % len(sample_addresses)]
        label = labels[i] if i < len(labels) else f"Recipient_{i + 1}"
        recipients.append({
            "address": addr,
            "amount": str(1_000_000_000 + i * 500_000_000),  # RAO
            "label": label,
        })

    fmt = args.format
    if fmt == "json":
        with open(output, "w") as f:
            json.dump(recipients, f, indent=2)
    else:
        with open(output, "w", newline="") as f:
            f.write("address,amount,label\n")
            for r in recipients:
                f.write(f"{r['address']},{r['amount']},{r['label']}\n")

    print(f"Generated template with {count} recipients: {output}")
    print(f"Format: {fmt.upper()}")
    print("Amounts are in RAO (1 TAO = 1000000000 RAO); decimal values are read as TAO.")
    print(f"\nEdit the file with your actual recipient addresses and amounts,")
    print(f"then run: tao-disburse validate --file {output}")
    return EXIT_OK


def _add_common_run_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--wallet", "-w", help="Bittensor wallet name (env: TAO_DISBURSE_WALLET)"
    )
    parser.add_argument(
        "--network", "-n",
        help="Bittensor network (finney, test, local). Default: finney"
    )
    parser.add_argument(
        "--max-retries", type=int,
        help="Retry attempts per batch after the first. Default: 3"
    )
    parser.add_argument(
        "--retry-delay", type=float,
        help="Seconds between attempts of one batch. Default: 5"
    )
    parser.add_argument(
        "--ledger-dir",
        help="Directory for transaction-hashes.txt and failed-batches.json"
    )
    parser.add_argument("--env-file", help="Path to a .env file")
    parser.add_argument(
        "--finalize", action="store_true",
        help="Wait for transaction finalization (slower but more certain)"
    )
    parser.add_argument(
        "--allow-death", action="store_true",
        help="Allow transfers that may reduce accounts below existential deposit"
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="tao-disburse",
        description="TAO Disburse — batched payouts for the Bittensor ecosystem",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--version", action="version", version=f"tao-disburse {__version__}"
    )
    parser.add_argument("--log-level", default="WARNING", help="Engine log level")
    parser.add_argument(
        "--json-logs", action="store_true", help="Emit engine logs as JSON lines"
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # Transfer command
    transfer_parser = subparsers.add_parser(
        "transfer", help="Send TAO to every recipient, batch by batch"
    )
    _add_common_run_args(transfer_parser)
    transfer_parser.add_argument(
        "--file", "-f", help="Path to recipient list (CSV or JSON)"
    )
    transfer_parser.add_argument(
        "--batch-size", "-b", type=int,
        help="Recipients per batch transaction. Default: 200"
    )
    transfer_parser.add_argument(
        "--dry-run", action="store_true",
        help="Preview batches and balance without sending"
    )
    transfer_parser.add_argument(
        "--yes", "-y", action="store_true",
        help="Skip confirmation prompt"
    )

    # Retry command
    retry_parser = subparsers.add_parser(
        "retry", help="Retry batches that failed in earlier runs"
    )
    _add_common_run_args(retry_parser)
    retry_parser.add_argument(
        "--batch", type=int, help="Retry only this batch number"
    )

    # Failures command
    failures_parser = subparsers.add_parser(
        "failures", help="List failed batches awaiting retry"
    )
    failures_parser.add_argument("--ledger-dir", help="Ledger directory")
    failures_parser.add_argument("--env-file", help="Path to a .env file")

    # Validate command
    validate_parser = subparsers.add_parser(
        "validate", help="Validate a recipient list"
    )
    validate_parser.add_argument(
        "--file", "-f", required=True, help="Path to recipient list"
    )

    # Generate template command
    template_parser = subparsers.add_parser(
        "generate-template", help="Generate a template recipient file"
    )
    template_parser.add_argument(
        "--output", "-o", default="recipients.csv", help="Output file path"
    )
    template_parser.add_argument(
        "--format", choices=["csv", "json"], default="csv", help="File format"
    )
    template_parser.add_argument(
        "--count", "-c", type=int, default=5, help="Number of sample recipients"
    )

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return EXIT_OK

    configure_logging(args.log_level, json_output=args.json_logs)

    commands = {
        "transfer": cmd_transfer,
        "retry": cmd_retry,
        "failures": cmd_failures,
        "validate": cmd_validate,
        "generate-template": cmd_generate_template,
    }

    return commands[args.command](args)


if __name__ == "__main__":
    sys.exit(main())
