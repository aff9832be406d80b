from __future__ import annotations

import argparse
import os
from pathlib import Path

_DEFAULT_BLANK_DB_PATH = Path("./data/creditmeter-blank.db").resolve()


def add_runtime_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--blank-db",
        action="store_true",
        help="Use a blank sqlite DB at ./data/creditmeter-blank.db (overrides CREDITMETER_DB_URL).",
    )
    parser.add_argument(
        "--pricing-file",
        help="JSON pricing table layered over the built-in model prices.",
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Override CREDITMETER_LOG_LEVEL.",
    )


def apply_runtime_overrides(args: argparse.Namespace) -> None:
    if getattr(args, "pricing_file", None):
        os.environ["CREDITMETER_PRICING_FILE"] = args.pricing_file
    if getattr(args, "log_level", None):
        os.environ["CREDITMETER_LOG_LEVEL"] = args.log_level
    if getattr(args, "blank_db", False):
        _DEFAULT_BLANK_DB_PATH.parent.mkdir(parents=True, exist_ok=True)
        if _DEFAULT_BLANK_DB_PATH.exists():
            _DEFAULT_BLANK_DB_PATH.unlink()
        os.environ["CREDITMETER_DB_URL"] = f"sqlite:///{_DEFAULT_BLANK_DB_PATH}"
