from __future__ import annotations

import argparse

from dotenv import load_dotenv

from server.creditmeter.core.cli import add_runtime_args, apply_runtime_overrides
from server.creditmeter.core.config import Settings
from server.creditmeter.core.migrations import (
    SchemaOutOfDate,
    assert_db_current,
    create_revision,
    revision_state,
    stamp_head,
    upgrade_to_head,
)


def _parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Credit ledger schema migrations.")
    add_runtime_args(parser)
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("upgrade", help="Apply all pending migrations.")
    sub.add_parser("check", help="Exit 0 when the ledger schema is at head, 1 when behind.")
    sub.add_parser("status", help="Print applied and expected revision heads.")
    sub.add_parser("stamp-head", help="Mark an existing schema as current without migrating.")

    rev = sub.add_parser("revision", help="Create a new migration revision.")
    rev.add_argument("-m", "--message", required=True, help="Revision message.")
    rev.add_argument(
        "--empty",
        action="store_true",
        help="Create an empty revision instead of autogenerating from the models.",
    )
    return parser


def main() -> int:
    load_dotenv()
    args = _parser().parse_args()
    apply_runtime_overrides(args)
    settings = Settings.from_env()

    if args.command == "upgrade":
        upgrade_to_head(settings)
        print("ok: upgraded to head")
        return 0

    if args.command == "check":
        try:
            assert_db_current(settings)
        except SchemaOutOfDate as exc:
            print(f"pending: {exc}")
            return 1
        print("ok: at head")
        return 0

    if args.command == "status":
        state = revision_state(settings)
        print(f"{state.describe()} at_head={state.at_head}")
        return 0

    if args.command == "stamp-head":
        stamp_head(settings)
        print(f"ok: stamped ({revision_state(settings).describe()})")
        return 0

    if args.command == "revision":
        create_revision(settings, message=args.message, autogenerate=not args.empty)
        print("ok: revision created")
        return 0

    print(f"unknown command: {args.command}")
    return 2


if __name__ == "__main__":
    raise SystemExit(main())
