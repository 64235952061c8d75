"""
Main application entry point for the Nyl server.

Serves status, model selection and chat over HTTP/SSE, and status pushes over
the /ws/updates WebSocket.
"""

# Standard library imports
import argparse
import sys
from pathlib import Path

# Third-party imports
import uvicorn
from dotenv import load_dotenv

# Local imports
from common.config import load_config
from common.logging import get_logger, setup_logging
from gateway.server import create_gateway_app

# Load environment variables from .env file at module level (secrets only)
load_dotenv()

logger = get_logger(__name__)


def parse_args(argv=None):
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(description="Nyl appliance server")
    parser.add_argument("--port", type=int, help="Override the port to run on")
    parser.add_argument("--host", type=str, help="Override the host to run on")
    parser.add_argument("--config", type=Path, help="Path to config.yaml")
    return parser.parse_args(argv)


def main() -> None:
    """Main entry point."""
    try:
        args = parse_args()

        config = load_config(args.config)
        if args.host:
            config.server.host = args.host
        if args.port:
            config.server.port = args.port

        setup_logging(config)

        app = create_gateway_app(config)

        logger.info(
            event="starting_server",
            host=config.server.host,
            port=config.server.port,
            version=config.server.version,
        )

        uvicorn.run(
            app,
            host=config.server.host,
            port=config.server.port,
            log_config=None,  # Use our custom logging setup
            access_log=False,  # Request logging middleware covers this
        )

    except KeyboardInterrupt:
        logger.info(event="application_shutdown", reason="Keyboard interrupt")
    except Exception as e:
        logger.critical(event="application_crashed", error=str(e), error_type=type(e).__name__)
        sys.exit(1)


if __name__ == "__main__":
    main()
