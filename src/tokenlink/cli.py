"""
Command-line interface for the token linker.

Provides commands for linking a token, transferring across the link and
inspecting or overriding workflow progress.
"""

import argparse
import asyncio
import json
import logging
import signal
import sys
from decimal import Decimal

import structlog

from tokenlink import __version__
from tokenlink.config import WEI_PER_ETHER, LinkerConfig, LinkSide, load_config
from tokenlink.errors import (
    ConfigurationError,
    InvariantViolationError,
    LinkerError,
    RejectedTransactionError,
    TransientNetworkError,
)
from tokenlink.state.database import init_store
from tokenlink.workflow.checkpoint import WorkflowStage
from tokenlink.workflow.link import LinkWorkflow

logger = structlog.get_logger(__name__)

EXIT_CODES = {
    ConfigurationError: 2,
    RejectedTransactionError: 3,
    InvariantViolationError: 4,
    TransientNetworkError: 5,
}


def setup_logging(level: str = "INFO", json_format: bool = False) -> None:
    """Configure structured logging."""
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer() if json_format
            else structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        level=getattr(logging, level.upper()),
        stream=sys.stdout,
    )


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser."""
    parser = argparse.ArgumentParser(
        prog="tokenlink",
        description="Link a token across two networks with the Interchain Token Service",
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )
    parser.add_argument(
        "--env-file",
        default=".env",
        help="Environment file to read settings from (default: .env)",
    )
    parser.add_argument(
        "--database-url",
        help="Checkpoint database URL (overrides LINKER_DATABASE_URL)",
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (overrides LINKER_LOG_LEVEL)",
    )
    parser.add_argument(
        "--log-json",
        action="store_true",
        help="Output logs in JSON format",
    )

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    # Link command
    link_parser = subparsers.add_parser("link", help="Run the linking workflow")
    link_parser.add_argument(
        "--until",
        choices=[stage.value for stage in WorkflowStage if stage is not WorkflowStage.INIT],
        default=WorkflowStage.READY.value,
        help="Stop once this stage is reached (default: ready)",
    )

    # Transfer command
    transfer_parser = subparsers.add_parser("transfer", help="Transfer tokens across a ready link")
    transfer_parser.add_argument(
        "--from",
        dest="source",
        choices=[side.value for side in LinkSide],
        default=LinkSide.ORIGIN.value,
        help="Side the tokens leave from (default: origin)",
    )
    transfer_parser.add_argument(
        "--receiver",
        help="Receiver address (default: LINKER_RECEIVER_ADDRESS)",
    )
    transfer_parser.add_argument(
        "--amount",
        type=Decimal,
        help="Amount in whole tokens (default: LINKER_TRANSFER_AMOUNT)",
    )

    # Status command
    status_parser = subparsers.add_parser("status", help="Show the checkpoint and transfer history")
    status_parser.add_argument(
        "--all",
        dest="all_links",
        action="store_true",
        help="List every link recorded in the checkpoint database",
    )

    # Acknowledge command
    ack_parser = subparsers.add_parser(
        "acknowledge",
        help="Advance a halted checkpoint after verifying the step on-chain",
    )
    ack_parser.add_argument(
        "stage",
        choices=[stage.value for stage in WorkflowStage if stage is not WorkflowStage.INIT],
        help="Stage the operator confirmed as committed",
    )

    # Balances command
    subparsers.add_parser("balances", help="Show token balances on both networks")

    return parser


def build_config(args: argparse.Namespace) -> LinkerConfig:
    """Load configuration, applying command-line overrides."""
    overrides = {"_env_file": args.env_file}
    if args.database_url:
        overrides["database_url"] = args.database_url
    if args.log_level:
        overrides["log_level"] = args.log_level
    if args.log_json:
        overrides["log_json"] = True
    if getattr(args, "receiver", None):
        overrides["receiver_address"] = args.receiver
    if getattr(args, "amount", None) is not None:
        overrides["transfer_amount"] = args.amount
    return load_config(**overrides)


def install_stop_handler(workflow: LinkWorkflow) -> None:
    """Stop between steps on SIGINT/SIGTERM instead of interrupting a step."""
    loop = asyncio.get_running_loop()

    def signal_handler():
        print("\nStopping after the current step...")
        workflow.stop()

    try:
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, signal_handler)
    except NotImplementedError:
        pass  # Signals not available on Windows


async def run_link(config: LinkerConfig, args: argparse.Namespace) -> None:
    """Run the linking workflow up to the requested stage."""
    workflow = LinkWorkflow.from_config(config)
    install_stop_handler(workflow)

    print(f"Interchain Token Linker v{__version__}")
    print(f"Origin:      {config.origin.name} {config.origin.token_address} ({config.origin.manager_mode.name})")
    print(f"Destination: {config.destination.name} {config.destination.token_address} ({config.destination.manager_mode.name})")
    print()

    await workflow.initialize()
    try:
        checkpoint = await workflow.run(WorkflowStage(args.until))
    finally:
        await workflow.shutdown()

    print(f"Stage:    {checkpoint.stage.value}")
    print(f"Salt:     {checkpoint.salt or '-'}  (keep this for future reference)")
    print(f"Token ID: {checkpoint.token_id or '-'}")
    for network, handle in checkpoint.managers.items():
        print(f"Manager on {network}: {handle.address} ({handle.mode.name})")


async def run_transfer(config: LinkerConfig, args: argparse.Namespace) -> None:
    """Transfer tokens from one side of the link to the other."""
    config.require_transfer_inputs()
    workflow = LinkWorkflow.from_config(config)

    await workflow.initialize()
    try:
        receipt = await workflow.transfer(LinkSide(args.source))
    finally:
        await workflow.shutdown()

    print(json.dumps(receipt.to_dict(), indent=2))


async def show_status(config: LinkerConfig, all_links: bool = False) -> None:
    """Print the checkpoint for the configured link, or a summary of every link."""
    store = await init_store(config.database_url)
    try:
        if all_links:
            checkpoints = await store.list_checkpoints()
            if not checkpoints:
                print("No checkpoints recorded")
            for checkpoint in checkpoints:
                print(f"{checkpoint.link_id}  {checkpoint.stage.value}  {checkpoint.last_error or '-'}")
            return

        checkpoint = await store.load_checkpoint(config.link_id)
        if checkpoint is None:
            print(f"No checkpoint for {config.link_id}")
            return
        status = checkpoint.to_dict()
        status["transfers"] = await store.load_transfers(config.link_id)
        print(json.dumps(status, indent=2))
    finally:
        await store.disconnect()


async def run_acknowledge(config: LinkerConfig, args: argparse.Namespace) -> None:
    workflow = LinkWorkflow.from_config(config)
    await workflow.initialize()
    try:
        checkpoint = await workflow.acknowledge(WorkflowStage(args.stage))
    finally:
        await workflow.shutdown()
    print(f"Checkpoint advanced to {checkpoint.stage.value}")


async def show_balances(config: LinkerConfig) -> None:
    """Print signer and receiver balances of the linked token on both networks."""
    workflow = LinkWorkflow.from_config(config)
    for chain in workflow.chains.values():
        await chain.connect()
    try:
        for side in LinkSide:
            token = workflow.tokens[side]
            descriptor = await token.describe()
            holders = [("signer", token.chain.address)]
            if config.receiver_address:
                holders.append(("receiver", config.receiver_address))

            native = await token.chain.native_balance()
            print(f"{descriptor.network} ({descriptor.address})")
            print(f"  signer native balance: {Decimal(native) / WEI_PER_ETHER}")
            print(f"  total supply: {descriptor.from_base_units(await token.total_supply())}")
            for label, address in holders:
                balance = await token.balance_of(address)
                print(f"  {label} {address}: {descriptor.from_base_units(balance)}")
    finally:
        for chain in workflow.chains.values():
            await chain.disconnect()


async def dispatch(config: LinkerConfig, args: argparse.Namespace) -> None:
    if args.command == "link":
        await run_link(config, args)
    elif args.command == "transfer":
        await run_transfer(config, args)
    elif args.command == "status":
        await show_status(config, args.all_links)
    elif args.command == "acknowledge":
        await run_acknowledge(config, args)
    elif args.command == "balances":
        await show_balances(config)


def exit_code_for(error: LinkerError) -> int:
    for error_type, code in EXIT_CODES.items():
        if isinstance(error, error_type):
            return code
    return 1


def main() -> None:
    """Main entry point."""
    parser = create_parser()
    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        sys.exit(1)

    try:
        config = build_config(args)
    except ConfigurationError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(EXIT_CODES[ConfigurationError])

    setup_logging(config.log_level, config.log_json)

    try:
        asyncio.run(dispatch(config, args))
    except LinkerError as e:
        logger.error(
            "command_failed",
            command=args.command,
            error_type=type(e).__name__,
            error=e.message,
            step=e.step,
            stage=e.stage,
            committed=e.committed,
        )
        print(f"{type(e).__name__}: {e}", file=sys.stderr)
        if e.committed:
            print(f"Committed so far: {json.dumps(e.committed, indent=2)}", file=sys.stderr)
        sys.exit(exit_code_for(e))


if __name__ == "__main__":
    main()
