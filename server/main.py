from __future__ import annotations

import argparse
import os

from dotenv import load_dotenv
import uvicorn

from server.creditmeter.app import create_app
from server.creditmeter.core.cli import add_runtime_args, apply_runtime_overrides


if __name__ != "__main__":
    load_dotenv()
    app = create_app()


def main() -> None:
    parser = argparse.ArgumentParser(description="Run the credit ledger API.")
    add_runtime_args(parser)
    parser.add_argument("--host", default="0.0.0.0")
    parser.add_argument("--port", type=int, default=8000)
    args = parser.parse_args()

    load_dotenv()
    apply_runtime_overrides(args)
    reload = os.getenv("CREDITMETER_RELOAD", "").strip().lower() in {"1", "true", "yes", "y", "on"}
    uvicorn.run("server.main:app", host=args.host, port=args.port, reload=reload)


if __name__ == "__main__":
    main()
