from __future__ import annotations

import argparse
import os


def add_runtime_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--host", help="Listen address (overrides CREDIT_PROXY_HOST).")
    parser.add_argument("--port", type=int, help="Listen port (overrides CREDIT_PROXY_PORT).")
    parser.add_argument(
        "--ledger-backend",
        choices=["rest", "sql"],
        help="Credit ledger store (overrides CREDIT_PROXY_LEDGER_BACKEND).",
    )
    parser.add_argument(
        "--fail-closed",
        action="store_true",
        help="Reject requests while the credit ledger is unreachable.",
    )


def apply_runtime_overrides(args: argparse.Namespace) -> None:
    if getattr(args, "host", None):
        os.environ["CREDIT_PROXY_HOST"] = args.host
    if getattr(args, "port", None):
        os.environ["CREDIT_PROXY_PORT"] = str(args.port)
    if getattr(args, "ledger_backend", None):
        os.environ["CREDIT_PROXY_LEDGER_BACKEND"] = args.ledger_backend
    if getattr(args, "fail_closed", False):
        os.environ["CREDIT_PROXY_LEDGER_FAIL_MODE"] = "closed"
