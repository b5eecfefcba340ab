"""
Oracle Bridge Service

Process entry point: load configuration, configure logging, run the
engine until SIGINT/SIGTERM, then stop sources and make a final flush.

Usage:
    python -m oracle_bridge.service
    oracle-bridge
"""

import asyncio
import logging
import signal
import sys
from typing import Optional

from .config import ConfigError, load_config
from .engine import BridgeEngine


logger = logging.getLogger(__name__)


async def main(dotenv_path: Optional[str] = None) -> int:
    """Main entry point for the bridge service."""
    # Configure logging
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    try:
        config = load_config(dotenv_path=dotenv_path)
    except ConfigError as e:
        logger.error(f"Invalid configuration: {e}")
        return 1
    logging.getLogger().setLevel(config.log_level)

    engine = BridgeEngine(config)
    stop_requested = asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_requested.set)
        except NotImplementedError:
            # Windows: KeyboardInterrupt still ends asyncio.run()
            pass

    await engine.start()
    try:
        await stop_requested.wait()
        logger.info("Shutdown requested")
    finally:
        await engine.stop()
    return 0


def run():
    """Console script entry point."""
    if sys.platform == 'win32':
        asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())
    try:
        code = asyncio.run(main())
    except KeyboardInterrupt:
        code = 0
    sys.exit(code)


if __name__ == "__main__":
    run()
