from __future__ import annotations

import argparse

from dotenv import load_dotenv

from server.creditmeter.core.cli import add_runtime_args, apply_runtime_overrides
from server.creditmeter.core.config import Settings
from server.creditmeter.worker import run_worker_loop


def main() -> None:
    parser = argparse.ArgumentParser(description="Run the credit ledger background worker.")
    add_runtime_args(parser)
    args = parser.parse_args()

    load_dotenv()
    apply_runtime_overrides(args)
    settings = Settings.from_env()
    run_worker_loop(settings, process_index=0)


if __name__ == "__main__":
    main()
