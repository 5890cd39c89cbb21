"""Offline key pool administration.

Usage:
    keygate-keys generate 50000
    keygate-keys count --pool /var/lib/keygate/keys.txt

Do not run against a pool that a live server is issuing from: the store's
exclusive section only covers one process.
"""

import argparse
import logging
import sys
from typing import Optional, Sequence

from keygate.app.core.config import settings
from keygate.app.core.logging import setup_logging
from keygate.app.core.security import SecretsTokenGenerator
from keygate.app.exceptions import StoreIOError
from keygate.app.services.token_store import TokenStore


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="keygate-keys", description="Manage the activation key pool"
    )
    parser.add_argument(
        "--pool",
        default=str(settings.pool_path),
        help=f"pool file (default: {settings.pool_path})",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="log progress")
    commands = parser.add_subparsers(dest="command", required=True)

    generate = commands.add_parser("generate", help="append freshly generated keys")
    generate.add_argument(
        "count",
        type=int,
        nargs="?",
        default=settings.pool_replenish_size,
        help=f"number of keys (default: {settings.pool_replenish_size})",
    )
    generate.add_argument(
        "--bytes",
        type=int,
        default=settings.token_bytes,
        dest="nbytes",
        help=f"entropy per key in bytes (default: {settings.token_bytes})",
    )

    commands.add_parser("count", help="print the number of unissued keys")
    commands.add_parser("compact", help="fold the consumed log into the pool file")
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging()
    if not args.verbose:
        logging.getLogger("keygate").setLevel(logging.WARNING)

    if args.command == "generate":
        if args.count < 1:
            parser.error("count must be at least 1")
        if args.nbytes < 16:
            parser.error("--bytes must be at least 16")

    store = TokenStore(
        args.pool,
        generator=SecretsTokenGenerator(getattr(args, "nbytes", settings.token_bytes)),
        compact_threshold=settings.pool_compact_threshold,
    )

    try:
        if args.command == "generate":
            store.generate(args.count)
            print(f"Generated {args.count} keys; {len(store)} unissued in {store.path}")
        elif args.command == "count":
            print(len(store))
        elif args.command == "compact":
            store.compact()
            print(f"Compacted {store.path}; {len(store)} unissued")
    except StoreIOError as exc:
        print(f"error: {exc.message}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
