#!/usr/bin/env python3
"""Entry point for the Anyrand operator service.

This module provides the main entry point for the operator that watches
Anyrand randomness requests and fulfills them with drand beacon signatures.
"""

import argparse
import asyncio
import logging
import os
import sys

# Configure logging before any other imports create loggers
def setup_logging(level: str = "INFO") -> None:
    """Configure logging for the application.

    Args:
        level: Logging level as string (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    log_level: int = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(
        level=log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

# Get logger for this module
logger = logging.getLogger(__name__)

from src.anyrand_operator.config import OperatorConfig
from src.anyrand_operator.service import AnyrandOperator


async def main() -> None:
    """Main entry point for the Anyrand operator service.

    Parses startup arguments, loads configuration from environment,
    and runs the operator until interrupted.

    Raises:
        SystemExit: On configuration or runtime errors
    """
    parser: argparse.ArgumentParser = argparse.ArgumentParser(
        description="Anyrand Operator - Fulfill randomness requests with drand beacon signatures",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""Environment Variables:
  RPC_URL                - RPC endpoint of the chain hosting Anyrand
  ANYRAND_ADDRESS        - Anyrand contract address
  OPERATOR_PRIVATE_KEY   - Key used to sign fulfillment transactions
  WS_RPC_URL             - Optional WebSocket endpoint for push events
  BEACON_NETWORK         - drand network (default: evmnet)
  BEACON_URL             - drand HTTP relay (default: https://api.drand.sh)
  HIGH_FEE_THRESHOLD     - wei per gas above which a request is high priority
  LOW_FEE_THRESHOLD      - wei per gas below which a request may be low priority
  CONFIRMATIONS          - Confirmations required (default: per chain)
  POLLING_INTERVAL       - Event and snapshot polling interval (default: 12)
  LOG_LEVEL              - Logging level (can be overridden with --log-level)
        """
    )
    parser.add_argument(
        "--log-level",
        default=os.environ.get("LOG_LEVEL", "INFO"),
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Set the logging level (default: INFO)"
    )
    args: argparse.Namespace = parser.parse_args()

    setup_logging(args.log_level)

    logger.info("=== Anyrand Operator Starting ===")
    logger.info("Loading configuration from environment...")

    operator: AnyrandOperator | None = None
    try:
        config: OperatorConfig = OperatorConfig.from_env()
        logger.info("Configuration loaded successfully")

        logger.info("Creating AnyrandOperator instance...")
        operator = AnyrandOperator(config)
        logger.info("AnyrandOperator instance created, starting main loop...")
        await operator.run()

    except ValueError as e:
        logger.error(f"Configuration Error: {e}")
        logger.error("Please check your environment variables:")
        logger.error("  - RPC_URL: RPC endpoint of the chain hosting Anyrand")
        logger.error("  - ANYRAND_ADDRESS: Anyrand contract address")
        logger.error("  - OPERATOR_PRIVATE_KEY: Key used to sign fulfillments (64 hex chars)")
        logger.error("  - BEACON_NETWORK: drand network (default: evmnet)")
        sys.exit(1)

    except KeyboardInterrupt:
        logger.info("\nReceived interrupt signal, shutting down gracefully...")
        if operator:
            operator.stop()
        sys.exit(0)

    except Exception as e:
        logger.error(f"Fatal Error: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    asyncio.run(main())
