#!/usr/bin/env python3
"""
Fractal Registry - Command Line Interface

Usage:
    fractal-registry --as <account> insert <grantee> <data_id> [--locked-until NS]
    fractal-registry --as <account> delete <grantee> <data_id> [--locked-until NS]
    fractal-registry find [--owner A] [--grantee K] [--data-id D]
    fractal-registry grants-for <grantee> <data_id>
    fractal-registry derive-id <owner> <grantee> <data_id> [--locked-until NS]
    fractal-registry keygen                   Print a fresh ed25519 grantee key
    fractal-registry check                    Audit index consistency

Lock values and --now-ns are nanoseconds since the Unix epoch.
"""

import argparse
import json
import logging
import os
import sys
from typing import List, Optional

from fractal_registry.clock import SystemTimeSource
from fractal_registry.config import DEFAULT_DB_PATH, RegistryConfig, build_registry
from fractal_registry.errors import RegistryError, bad_request
from fractal_registry.identity import ID_SCHEMES, derive_grant_id
from fractal_registry.keys import generate_public_key
from fractal_registry.models import CallContext, make_grant

logger = logging.getLogger("fractal_registry.cli")


def setup_logging(verbose: bool = False):
    """Configure logging for CLI usage."""
    level = logging.DEBUG if verbose else logging.WARNING
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
    )


def _config(args) -> RegistryConfig:
    base = RegistryConfig.from_env()
    return RegistryConfig(
        db_path=args.db,
        id_scheme=args.id_scheme or base.id_scheme,
        event_log_path=base.event_log_path,
        env=base.env,
    )


def _ctx(args) -> CallContext:
    if not args.caller:
        raise bad_request("--as <account> is required for this command")
    now_ns = args.now_ns if args.now_ns is not None else SystemTimeSource().now_ns()
    return CallContext(caller=args.caller, now_ns=now_ns)


def _print_grants(grants) -> None:
    print(json.dumps([g.to_dict() for g in grants], indent=2))


def cmd_insert(args) -> int:
    registry = build_registry(_config(args))
    event = registry.insert_grant(_ctx(args), args.grantee, args.data_id, args.locked_until)
    print(event.to_log_line())
    return 0


def cmd_delete(args) -> int:
    registry = build_registry(_config(args))
    event = registry.delete_grant(_ctx(args), args.grantee, args.data_id, args.locked_until)
    print(event.to_log_line())
    return 0


def cmd_find(args) -> int:
    registry = build_registry(_config(args))
    _print_grants(registry.find_grants(owner=args.owner, grantee=args.grantee, data_id=args.data_id))
    return 0


def cmd_grants_for(args) -> int:
    registry = build_registry(_config(args))
    _print_grants(registry.grants_for(args.grantee, args.data_id))
    return 0


def cmd_derive_id(args) -> int:
    """Print a grant id without touching any database."""
    grant = make_grant(args.owner, args.grantee, args.data_id, args.locked_until)
    print(derive_grant_id(grant, scheme=args.id_scheme or RegistryConfig.from_env().id_scheme))
    return 0


def cmd_keygen(args) -> int:
    public_key, private_hex = generate_public_key()
    print(public_key)
    if args.show_private:
        print(f"private_key_hex: {private_hex}")
    return 0


def cmd_check(args) -> int:
    """Audit the index consistency invariant."""
    registry = build_registry(_config(args))
    problems = registry.check_consistency()
    if not problems:
        print(f"✓ {args.db}: indices consistent")
        return 0
    print(f"✗ {args.db}: {len(problems)} problem(s)")
    for p in problems:
        print(f"  - {p}")
    return 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="fractal-registry",
        description="Fractal access-grant registry CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable verbose logging")
    parser.add_argument(
        "--db",
        default=os.getenv("FRACTAL_DB_PATH", DEFAULT_DB_PATH),
        help="Path to registry database",
    )
    parser.add_argument("--id-scheme", choices=ID_SCHEMES, default=None, help="Grant id scheme")
    parser.add_argument("--as", dest="caller", help="Calling account (owner of new grants)")
    parser.add_argument("--now-ns", type=int, default=None, help="Override the time reference")

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    insert_parser = subparsers.add_parser("insert", help="Insert a grant")
    insert_parser.add_argument("grantee")
    insert_parser.add_argument("data_id")
    insert_parser.add_argument("--locked-until", type=int, default=None)
    insert_parser.set_defaults(func=cmd_insert)

    delete_parser = subparsers.add_parser("delete", help="Delete grants")
    delete_parser.add_argument("grantee")
    delete_parser.add_argument("data_id")
    delete_parser.add_argument("--locked-until", type=int, default=None,
                               help="Only the grant with exactly this lock (0/omitted: all)")
    delete_parser.set_defaults(func=cmd_delete)

    find_parser = subparsers.add_parser("find", help="Find grants (owner and/or grantee required)")
    find_parser.add_argument("--owner")
    find_parser.add_argument("--grantee")
    find_parser.add_argument("--data-id")
    find_parser.set_defaults(func=cmd_find)

    for_parser = subparsers.add_parser("grants-for", help="Grants for a grantee and data id")
    for_parser.add_argument("grantee")
    for_parser.add_argument("data_id")
    for_parser.set_defaults(func=cmd_grants_for)

    derive_parser = subparsers.add_parser("derive-id", help="Compute a grant id")
    derive_parser.add_argument("owner")
    derive_parser.add_argument("grantee")
    derive_parser.add_argument("data_id")
    derive_parser.add_argument("--locked-until", type=int, default=None)
    derive_parser.set_defaults(func=cmd_derive_id)

    keygen_parser = subparsers.add_parser("keygen", help="Generate an ed25519 grantee key")
    keygen_parser.add_argument("--show-private", action="store_true")
    keygen_parser.set_defaults(func=cmd_keygen)

    check_parser = subparsers.add_parser("check", help="Audit index consistency")
    check_parser.set_defaults(func=cmd_check)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 1

    setup_logging(args.verbose)
    try:
        return args.func(args)
    except RegistryError as e:
        print(f"error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
