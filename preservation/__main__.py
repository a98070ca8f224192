"""CLI entry point for preservation transfers.

Usage:
    python -m preservation init-db --config preservation.yml
    python -m preservation register /digital/preservation/ldpd/aip-123
    python -m preservation load-checksums checksums.csv --dry-run
    python -m preservation fixity 42 --enqueue-successor
    python -m preservation prepare 42
    python -m preservation transfer 17
    python -m preservation verify 9
    python -m preservation checksum ./file.tif --algorithm crc32c --multipart
    python -m preservation remediate "/top_dîr/ça_sub dir/file .txt.txt"

Stage commands run one stage for one record id, exactly as a worker
would. With ``run_queued_jobs_inline: true`` in the configuration each
stage runs its successor immediately.
"""

from __future__ import annotations

import argparse
import csv
import json
import logging
import sys
from typing import Any, Callable, Dict, List, Optional

from preservation.lib.checksum import (
    ChecksumAlgorithm,
    bin_to_hex,
    multipart_checksum,
    to_base64,
    whole_file_checksum,
)
from preservation.lib.config import PreservationConfig, load_config
from preservation.lib.context import StageContext, build_context
from preservation.lib.db import create_session_factory, get_record, init_db, session_scope
from preservation.lib.errors import PreservationError
from preservation.lib.keys import is_legal_key, remediate_key
from preservation.lib.models import StoredObject
from preservation.lib.observability import setup_logging
from preservation.lib.queues import CREATE_FIXITY, PERFORM_TRANSFER, PREPARE_TRANSFER, VERIFY_FIXITY, run_stage
from preservation.lib.sources import load_checksums, register_source_objects
from preservation.lib.verify import require_fixity_check

logger = logging.getLogger(__name__)


def _load_context(args: argparse.Namespace) -> StageContext:
    config = load_config(args.config)
    _setup_logging(args, config)
    session_factory = create_session_factory(config.database_url)
    return build_context(session_factory, config)


def _setup_logging(args: argparse.Namespace, config: Optional[PreservationConfig] = None) -> None:
    json_format = args.json_log
    log_file = args.log_file
    level = None
    if config is not None:
        json_format = json_format or config.logging.format == "json"
        log_file = log_file or config.logging.file
        level = config.logging.level
    setup_logging(verbose=args.verbose, json_format=json_format, log_file=log_file, level=level)


def _print_result(result: Any) -> None:
    if result is None:
        print("Nothing to do.")
    elif hasattr(result, "to_dict"):
        print(json.dumps(result.to_dict(), indent=2, default=str))
    else:
        print(result)


def cmd_init_db(args: argparse.Namespace) -> int:
    context = _load_context(args)
    init_db(context.session_factory)
    print(f"Database ready: {context.config.database_url}")
    return 0


def cmd_register(args: argparse.Namespace) -> int:
    context = _load_context(args)
    with session_scope(context.session_factory) as session:
        result = register_source_objects(session, args.directory)

    print(f"Registered {len(result.created)} new source object(s), {len(result.existing)} already present")
    if args.enqueue_successor:
        for source_object_id in result.created:
            context.dispatcher.enqueue(CREATE_FIXITY, source_object_id, enqueue_successor=True)
    return 0


def cmd_load_checksums(args: argparse.Namespace) -> int:
    context = _load_context(args)
    with open(args.csv_file, "r", encoding="utf-8", newline="") as f:
        rows: List[List[str]] = [row for row in csv.reader(f) if row]

    outcomes = load_checksums(
        context,
        rows,
        dry_run=args.dry_run,
        enqueue_successor=args.enqueue_successor,
        log_io=sys.stdout,
    )
    failed = [o for o in outcomes if o.status == "fail"]
    return 1 if failed else 0


def cmd_fixity(args: argparse.Namespace) -> int:
    context = _load_context(args)
    created = run_stage(
        context,
        CREATE_FIXITY,
        args.source_object_id,
        force=args.force,
        enqueue_successor=args.enqueue_successor,
    )
    print("Fixity checksum stored." if created else "Fixity checksum already present; use --force to recompute.")
    return 0


def cmd_prepare(args: argparse.Namespace) -> int:
    context = _load_context(args)
    result = run_stage(
        context,
        PREPARE_TRANSFER,
        args.source_object_id,
        enqueue_successor=not args.no_enqueue,
    )
    _print_result(result)
    return 0


def cmd_transfer(args: argparse.Namespace) -> int:
    context = _load_context(args)
    _print_result(run_stage(context, PERFORM_TRANSFER, args.pending_transfer_id))
    return 0


def cmd_verify(args: argparse.Namespace) -> int:
    context = _load_context(args)
    with session_scope(context.session_factory) as session:
        stored_object = get_record(session, StoredObject, args.stored_object_id)
        require_fixity_check(stored_object.storage_provider)

    verification = run_stage(context, VERIFY_FIXITY, args.stored_object_id)
    if verification is None:
        print("Nothing to verify.")
        return 0

    print(f"FixityVerification {verification.id}: {verification.status.value}")
    if verification.error_message:
        print(f"  {verification.error_message}")
    return 0 if verification.status.value == "success" else 1


def cmd_checksum(args: argparse.Namespace) -> int:
    _setup_logging(args)
    algorithm = ChecksumAlgorithm.from_name(args.algorithm)

    if args.multipart:
        if algorithm != ChecksumAlgorithm.CRC32C:
            print("Error: --multipart is only supported for crc32c")
            return 2
        result = multipart_checksum(args.path, args.part_size, calculate_whole_file=True)
        print(f"checksum_of_parts: {result.to_provider_string()}")
        print(f"part_size:         {result.part_size}")
        print(f"part_count:        {result.part_count}")
        print(f"whole_file:        {to_base64(result.whole_file_checksum)}")
        return 0

    value = whole_file_checksum(args.path, algorithm)
    print(f"{algorithm.value} {bin_to_hex(value)} {to_base64(value)}  {args.path}")
    return 0


def cmd_remediate(args: argparse.Namespace) -> int:
    _setup_logging(args)
    used: List[str] = []
    for key in args.keys:
        remediated = remediate_key(key, used)
        used.append(remediated)
        marker = "ok" if is_legal_key(key) and key == remediated else "->"
        print(f"{marker} {key!r} {remediated!r}")
    return 0


COMMANDS: Dict[str, Callable[[argparse.Namespace], int]] = {
    "init-db": cmd_init_db,
    "register": cmd_register,
    "load-checksums": cmd_load_checksums,
    "fixity": cmd_fixity,
    "prepare": cmd_prepare,
    "transfer": cmd_transfer,
    "verify": cmd_verify,
    "checksum": cmd_checksum,
    "remediate": cmd_remediate,
}


def build_parser() -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--config",
        "-c",
        help="Path to the YAML configuration (default: $PRESERVATION_CONFIG_PATH or preservation.yml)",
    )
    common.add_argument("-v", "--verbose", action="store_true", help="Enable verbose logging")
    common.add_argument(
        "--json-log",
        action="store_true",
        help="Output logs in JSON format (for log aggregation systems)",
    )
    common.add_argument("--log-file", help="Write logs to a file in addition to console")

    parser = argparse.ArgumentParser(
        prog="preservation",
        description="Copy preserved files to cloud storage and verify them",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    # Register every file in a directory and checksum it
    python -m preservation register /digital/preservation/ldpd/aip-123 --enqueue-successor

    # Load checksums computed elsewhere (rows: algorithm,path,hex)
    python -m preservation load-checksums checksums.csv --dry-run

    # Upload one pending transfer
    python -m preservation transfer 17

    # Show what key a path would be stored under
    python -m preservation remediate "/top_dîr/ça_sub dir/file .txt.txt"
        """,
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("init-db", parents=[common], help="Create database tables")

    register = subparsers.add_parser("register", parents=[common], help="Register files as source objects")
    register.add_argument("directory", help="Directory to walk recursively")
    register.add_argument(
        "--enqueue-successor",
        action="store_true",
        help="Enqueue fixity checksums (and everything after) for new source objects",
    )

    load = subparsers.add_parser("load-checksums", parents=[common], help="Load fixity checksums from a CSV file")
    load.add_argument("csv_file", help="CSV rows of algorithm,path,hex_value")
    load.add_argument("--dry-run", action="store_true", help="Report rows without updating anything")
    load.add_argument("--enqueue-successor", action="store_true", help="Enqueue transfer preparation")

    fixity = subparsers.add_parser("fixity", parents=[common], help="Compute a source object's fixity checksum")
    fixity.add_argument("source_object_id", type=int)
    fixity.add_argument("--force", action="store_true", help="Recompute an existing checksum")
    fixity.add_argument("--enqueue-successor", action="store_true", help="Enqueue transfer preparation")

    prepare = subparsers.add_parser("prepare", parents=[common], help="Create pending transfers for a source object")
    prepare.add_argument("source_object_id", type=int)
    prepare.add_argument("--no-enqueue", action="store_true", help="Do not enqueue the transfers")

    transfer = subparsers.add_parser("transfer", parents=[common], help="Perform a pending transfer")
    transfer.add_argument("pending_transfer_id", type=int)

    verify = subparsers.add_parser("verify", parents=[common], help="Verify a stored object's fixity")
    verify.add_argument("stored_object_id", type=int)

    checksum = subparsers.add_parser("checksum", parents=[common], help="Checksum a local file")
    checksum.add_argument("path")
    checksum.add_argument("--algorithm", "-a", default="sha256", help="sha256, sha512, md5 or crc32c")
    checksum.add_argument("--multipart", action="store_true", help="CRC32C checksum-of-parts as S3 reports it")
    checksum.add_argument("--part-size", type=int, default=None, help="Bytes per part (default: SDK part size)")

    remediate = subparsers.add_parser("remediate", parents=[common], help="Show the legal key for paths")
    remediate.add_argument("keys", nargs="+")

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for the CLI."""
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        return COMMANDS[args.command](args)
    except PreservationError as e:
        logger.error("%s failed: %s", args.command, e.message, extra={"error": e.to_dict()})
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 2
    except KeyboardInterrupt:
        print("\nInterrupted.", file=sys.stderr)
        return 130


if __name__ == "__main__":
    sys.exit(main())
