#!/usr/bin/env python3
"""
BillFlow - Main Entry Point.

Command-line access to the bill engine: upload invoices, inspect bills
and the review queue, run review decisions, post receiving and retry
documents whose OCR failed.

Usage:
    python main.py upload invoice.pdf --vendor acme
    python main.py queue --state Pending
    python main.py show bill_1a2b3c
    python main.py approve bill_1a2b3c --actor alice
    python main.py receive bill_1a2b3c --policy AverageCost
    python main.py retry

Exit codes:
    0  success
    1  the engine refused or failed the operation
    2  bad invocation (arguments, missing files)
"""

import argparse
import json
import mimetypes
import sys
from pathlib import Path
from typing import Any, List, Optional

# Add project root to path for imports
PROJECT_ROOT = Path(__file__).parent
sys.path.insert(0, str(PROJECT_ROOT))

from config import ConfigurationManager
from billflow.bill import BillState
from billflow.receiving.summary import CostPolicy
from billflow.review.queue import QueueFilter, SortField
from billflow.utils.exceptions import BillFlowError
from billflow.utils.logger import get_logger, setup_logger_from_config

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_USAGE = 2


def parse_arguments(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """
    Parse command-line arguments.

    Returns:
        Parsed argument namespace.
    """
    parser = argparse.ArgumentParser(
        description="BillFlow - Vendor Bill Extraction, Matching & Review Engine",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    Upload a scanned invoice:
        python main.py upload scan.png --vendor acme

    Least confident pending bills first:
        python main.py queue --state Pending --sort priority

    Manually match a line:
        python main.py match bill_1a2b3c line_9f8e7d prod_42
        """
    )
    parser.add_argument("--config", "-c", type=str, default=None, help="Path to custom configuration file")
    parser.add_argument("--actor", type=str, default="cli", help="Name recorded in the audit trail")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")

    commands = parser.add_subparsers(dest="command", required=True)

    upload = commands.add_parser("upload", help="Upload and extract an invoice")
    upload.add_argument("file", type=str, help="PDF, PNG, JPEG or TIFF file")
    upload.add_argument("--vendor", type=str, default=None, help="Vendor id hint")
    upload.add_argument("--store", type=str, default=None, help="Store scope")
    upload.add_argument("--mime", type=str, default=None, help="Override the detected MIME type")

    show = commands.add_parser("show", help="Show a bill")
    show.add_argument("bill_id", type=str)
    show.add_argument("--audit", action="store_true", help="Include the audit trail")

    queue = commands.add_parser("queue", help="List the review queue")
    queue.add_argument("--state", type=str, default=None, choices=[s.value for s in BillState])
    queue.add_argument("--vendor", type=str, default=None)
    queue.add_argument("--min-confidence", type=float, default=None)
    queue.add_argument("--max-confidence", type=float, default=None)
    queue.add_argument("--flagged", action="store_true", help="Only bills with findings or ambiguous fields")
    queue.add_argument("--sort", type=str, default=SortField.PRIORITY.value, choices=[s.value for s in SortField])
    queue.add_argument("--desc", action="store_true", help="Reverse the sort order")
    queue.add_argument("--page", type=int, default=1)
    queue.add_argument("--per-page", type=int, default=None)
    queue.add_argument("--stats", action="store_true", help="Print queue statistics instead")

    approve = commands.add_parser("approve", help="Approve a bill")
    approve.add_argument("bill_id", type=str)

    for name, text in (("reject", "Reject a bill"), ("reopen", "Reopen an approved bill")):
        sub = commands.add_parser(name, help=text)
        sub.add_argument("bill_id", type=str)
        sub.add_argument("--reason", "-r", type=str, required=True)

    match = commands.add_parser("match", help="Match a line item to a product")
    match.add_argument("bill_id", type=str)
    match.add_argument("line_id", type=str)
    match.add_argument("product_id", type=str, nargs="?", default=None,
                       help="Product to use; without it the suggested match is accepted")

    receive = commands.add_parser("receive", help="Post receiving for an approved bill")
    receive.add_argument("bill_id", type=str)
    receive.add_argument("--policy", type=str, default=None, choices=[p.value for p in CostPolicy])

    commands.add_parser("retry", help="Reprocess documents whose retry is due")

    return parser.parse_args(argv)


def initialize_system(args: argparse.Namespace) -> ConfigurationManager:
    """
    Initialize configuration and logging.

    Args:
        args: Parsed command-line arguments.

    Returns:
        Initialized configuration manager.
    """
    if args.config:
        ConfigurationManager.reset()
    config = ConfigurationManager(args.config)
    if args.debug:
        config.set("logging.level", "DEBUG")

    logger = setup_logger_from_config()
    logger.debug(f"BillFlow {config.get('project.version', '1.0.0')}: {args.command}")
    return config


def emit(payload: Any) -> None:
    print(json.dumps(payload, indent=2, default=str))


def run_command(args: argparse.Namespace, service) -> Any:
    """Execute one subcommand; returns what should be printed."""
    if args.command == "upload":
        path = Path(args.file)
        if not path.is_file():
            raise FileNotFoundError(f"Input file not found: {path}")
        mime = args.mime or mimetypes.guess_type(path.name)[0] or "application/octet-stream"
        document_id = service.upload_document(path.read_bytes(), mime, vendor_hint=args.vendor,
                                              store_id=args.store, actor=args.actor)
        bill = service.get_bill_for_document(document_id)
        return {
            'document_id': document_id,
            'status': service.get_document(document_id).status.value,
            'bill': bill.summary() if bill else None,
        }

    if args.command == "show":
        result = service.get_bill(args.bill_id).summary()
        if args.audit:
            result['audit'] = [entry.summary() for entry in service.audit_trail(args.bill_id)]
        return result

    if args.command == "queue":
        if args.stats:
            return service.queue_stats().to_dict()
        filters = QueueFilter(
            state=BillState(args.state) if args.state else None,
            vendor_id=args.vendor,
            min_confidence=args.min_confidence,
            max_confidence=args.max_confidence,
            has_flags=True if args.flagged else None,
        )
        return service.query_queue(filters, SortField(args.sort), args.desc, args.page, args.per_page).to_dict()

    if args.command == "approve":
        return service.approve(args.bill_id, actor=args.actor).summary()

    if args.command == "reject":
        return service.reject(args.bill_id, args.reason, actor=args.actor).summary()

    if args.command == "reopen":
        return service.reopen_bill(args.bill_id, args.reason, actor=args.actor).summary()

    if args.command == "match":
        if args.product_id:
            service.match_line(args.bill_id, args.line_id, args.product_id, actor=args.actor)
        else:
            service.accept_match(args.bill_id, args.line_id, actor=args.actor)
        return service.get_bill(args.bill_id).line(args.line_id).to_dict()

    if args.command == "receive":
        return service.post_receiving(args.bill_id, args.policy, actor=args.actor).to_dict()

    if args.command == "retry":
        return service.retry_failed_documents()

    raise ValueError(f"Unknown command: {args.command}")


def main(argv: Optional[List[str]] = None) -> int:
    """
    Main function - entry point for command-line execution.

    Returns:
        Exit code (0 success, 1 refused or failed, 2 bad invocation).
    """
    args = parse_arguments(argv)

    try:
        initialize_system(args)
    except FileNotFoundError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_USAGE

    logger = get_logger(__name__)

    # Imported late so --config is in effect before components read settings
    from billflow.service import BillService

    service = BillService.from_config()
    try:
        emit(run_command(args, service))
        return EXIT_OK

    except FileNotFoundError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_USAGE

    except BillFlowError as e:
        logger.error(str(e))
        emit({'error': e.to_dict()})
        return EXIT_FAILED

    except KeyboardInterrupt:
        print("\nOperation cancelled by user")
        return 130

    finally:
        service.shutdown()


if __name__ == "__main__":
    sys.exit(main())
