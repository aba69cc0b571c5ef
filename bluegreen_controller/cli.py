"""
Blue/Green Deployment Controller - CLI.

============================================================
RESPONSIBILITY
============================================================
Command-line entry point.

- serve   : run the HTTP API (uvicorn); the app lifespan starts
            the controller and resumes in-flight deployments
- init-db : create the registry tables

============================================================
USAGE
============================================================
python -m bluegreen_controller serve --port 8000
python -m bluegreen_controller init-db --database-url postgresql://...

============================================================
"""

import argparse
import logging
import sys
from typing import List, Optional

import uvicorn

from .api import create_app
from .config import ControllerConfig, load_config_from_env
from .database import initialize_database
from .engine import init_controller
from .logging_setup import setup_logging
from .types import BlueGreenControllerError


logger = logging.getLogger(__name__)


# ============================================================
# CLI ARGUMENT PARSER
# ============================================================

def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser."""
    parser = argparse.ArgumentParser(
        prog="bluegreen-controller",
        description="Blue/green deployment controller with automatic rollback",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s serve                       # API on $PORT (default 8000)
  %(prog)s --log-level DEBUG --json-logs serve
  %(prog)s init-db --database-url sqlite:///bluegreen.db
        """,
    )

    logging_group = parser.add_argument_group("Logging Options")
    logging_group.add_argument(
        "--log-level",
        type=str,
        default=None,
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Log level (default: $LOG_LEVEL or INFO)",
    )
    logging_group.add_argument(
        "--json-logs",
        action="store_true",
        help="Emit JSON log lines",
    )
    parser.add_argument(
        "--database-url",
        type=str,
        default=None,
        help="Registry database URL (default: $DATABASE_URL or sqlite:///bluegreen.db)",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    serve = subparsers.add_parser("serve", help="Run the HTTP API")
    serve.add_argument("--host", type=str, default=None, help="Bind address")
    serve.add_argument("--port", type=int, default=None, help="Bind port")

    subparsers.add_parser("init-db", help="Create registry tables and exit")

    return parser


# ============================================================
# CLI CONFIGURATION BUILDER
# ============================================================

def build_config(args: argparse.Namespace) -> ControllerConfig:
    """
    Build configuration: environment first, CLI flags override.
    """
    config = load_config_from_env()

    if args.log_level:
        config.log_level = args.log_level
    if args.json_logs:
        config.log_json = True
    if args.database_url:
        config.database.url = args.database_url
    if getattr(args, "host", None):
        config.api.host = args.host
    if getattr(args, "port", None):
        config.api.port = args.port

    return config


# ============================================================
# COMMANDS
# ============================================================

def run_serve(config: ControllerConfig) -> int:
    controller = init_controller(config)
    app = create_app(controller)

    logger.info(f"Starting deployment controller API on {config.api.host}:{config.api.port}")
    logger.info(f"Configuration: {config.to_dict()}")

    uvicorn.run(
        app,
        host=config.api.host,
        port=config.api.port,
        log_level=config.log_level.lower(),
        access_log=True,
        log_config=None,
    )
    return 0


def run_init_db(config: ControllerConfig) -> int:
    initialize_database(config.database.url, echo=config.database.echo)
    logger.info("Registry database initialized")
    return 0


# ============================================================
# MAIN ENTRY POINT
# ============================================================

def main(argv: Optional[List[str]] = None) -> int:
    """
    Main entry point.

    Returns:
        Exit code
    """
    parser = create_parser()
    args = parser.parse_args(argv)

    config = build_config(args)
    setup_logging(config.log_level, json_format=config.log_json)

    try:
        if args.command == "serve":
            return run_serve(config)
        if args.command == "init-db":
            return run_init_db(config)
    except BlueGreenControllerError as e:
        logger.critical(f"{args.command} failed: {e}")
        return 1

    parser.print_help()
    return 2


if __name__ == "__main__":
    sys.exit(main())
