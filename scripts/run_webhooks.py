#!/usr/bin/env python3
"""Serve the payment webhook API with uvicorn.

Usage:
    python -m scripts.run_webhooks [--host 0.0.0.0] [--port 8000]
"""
import argparse

import uvicorn

from scripts.bootstrap import prepare, settings
from src.billing.api import app


def main():
    parser = argparse.ArgumentParser(description="Run the webhook server")
    parser.add_argument("--host", default="0.0.0.0")
    parser.add_argument("--port", type=int, default=settings.webhook_port)
    args = parser.parse_args()

    prepare()
    uvicorn.run(app, host=args.host, port=args.port, log_config=None)


if __name__ == "__main__":
    main()
