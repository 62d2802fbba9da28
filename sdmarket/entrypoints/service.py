"""Market service entrypoint.

Mirrors the data market contract into the local database, keeps it in
sync with ledger events, and optionally gates new submissions through the
quality engine.
"""

import argparse
import asyncio
import os
import signal
import sys

import bittensor as bt
from dotenv import load_dotenv

from sdmarket.base.config import add_args, load_settings, overrides_from_args
from sdmarket.base.errors import ConfigError, LedgerConnectionError


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Data market sync service")
    bt.logging.add_args(parser)
    add_args(parser)
    return parser


def main() -> None:
    # Load .env if not in test mode
    if os.environ.get("SDM_TEST_MODE") != "true":
        load_dotenv()

    parser = build_parser()
    args = parser.parse_args()
    bt.logging.set_config(config=bt.Config(parser).logging)

    try:
        settings = load_settings(overrides=overrides_from_args(args))
    except ConfigError as e:
        bt.logging.error(str(e))
        sys.exit(1)

    bt.logging.info({
        "service_config": {
            "rpc_url": settings.ledger.rpc_url,
            "contract": settings.ledger.contract_address,
            "confirmations": settings.ledger.confirmations,
            "mirror": settings.mirror.db_url.split("@")[-1],
            "auto_verify": settings.quality.auto_verify,
        }
    })

    from sdmarket.runtime import MarketRuntime

    runtime = MarketRuntime(settings)
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)

    def _signal_handler(sig, frame):
        bt.logging.info({"service": "shutdown_signal_received"})
        loop.call_soon_threadsafe(runtime.stop)

    signal.signal(signal.SIGINT, _signal_handler)
    signal.signal(signal.SIGTERM, _signal_handler)

    exit_code = 0
    try:
        loop.run_until_complete(runtime.initialize())
        loop.run_until_complete(runtime.run())
    except (ConfigError, LedgerConnectionError) as e:
        bt.logging.error({"service": "startup_failed", "error": str(e)})
        exit_code = 1
    except KeyboardInterrupt:
        bt.logging.info({"service": "keyboard_interrupt"})
    finally:
        loop.run_until_complete(runtime.close())
        loop.close()
        bt.logging.info({"service": "stopped"})
    if exit_code:
        sys.exit(exit_code)


if __name__ == "__main__":
    main()
