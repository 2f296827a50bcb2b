"""Command-line entry point: pick a transport and backends, then serve."""

import argparse
import asyncio
import logging
import sys
from typing import List, Optional

from dotenv import load_dotenv

from . import SERVER_NAME, __version__
from .backends import build_adapters
from .config import SERVER_TYPES, TRANSPORTS, GatewayConfig, mask_secret

logger = logging.getLogger("crm_gateway")


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="crm-gateway", description="CRM MCP gateway")
    parser.add_argument("--transport", choices=TRANSPORTS, help="Override MCP_TRANSPORT")
    parser.add_argument("--server-type", choices=SERVER_TYPES, help="Override MCP_SERVER_TYPE")
    parser.add_argument("--host", help="Override MCP_HOST")
    parser.add_argument("--port", type=int, help="Override MCP_PORT")
    parser.add_argument("--env-file", default=None, help="Path to a .env file")
    parser.add_argument("--version", action="version", version=f"{SERVER_NAME} {__version__}")
    return parser.parse_args(argv)


def log_configuration(config: GatewayConfig) -> None:
    logger.info(f"{SERVER_NAME} v{__version__}")
    logger.info(f"  Transport: {config.MCP_TRANSPORT}, backends: {config.MCP_SERVER_TYPE}")
    logger.info(f"  Google Sheets: {config.GOOGLE_SHEETS_SPREADSHEET_ID or 'not configured'}")
    logger.info(f"  Calendly token: {mask_secret(config.CALENDLY_API_TOKEN) or 'not configured'}")
    logger.info(f"  SendGrid key: {mask_secret(config.SENDGRID_API_KEY) or 'not configured'}")
    if config.MCP_API_KEY:
        logger.info(f"  Gateway API key: {mask_secret(config.MCP_API_KEY)}")


def selected_backend_missing(config: GatewayConfig) -> Optional[str]:
    """Name of an explicitly selected backend that lacks configuration."""
    required = {
        "sheets": config.sheets_configured,
        "calendly": config.calendly_configured,
        "email": config.sendgrid_configured,
    }
    if config.MCP_SERVER_TYPE in required and not required[config.MCP_SERVER_TYPE]:
        return config.MCP_SERVER_TYPE
    return None


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    load_dotenv(args.env_file)

    config = GatewayConfig()
    if args.transport:
        config.MCP_TRANSPORT = args.transport
    if args.server_type:
        config.MCP_SERVER_TYPE = args.server_type
    if args.host:
        config.MCP_HOST = args.host
    if args.port:
        config.MCP_PORT = args.port

    logging.basicConfig(
        level=getattr(logging, config.LOG_LEVEL, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )

    if config.MCP_SERVER_TYPE not in SERVER_TYPES:
        logger.error(f"Unknown MCP_SERVER_TYPE '{config.MCP_SERVER_TYPE}' (expected one of {', '.join(SERVER_TYPES)})")
        return 2
    if config.MCP_TRANSPORT not in TRANSPORTS:
        logger.error(f"Unknown MCP_TRANSPORT '{config.MCP_TRANSPORT}' (expected one of {', '.join(TRANSPORTS)})")
        return 2

    missing = selected_backend_missing(config)
    if missing:
        logger.error(f"Backend '{missing}' selected but its credentials are not configured")
        return 1

    log_configuration(config)

    try:
        if config.MCP_TRANSPORT == "stdio":
            from .registry import CapabilityRegistry
            from .router import DispatchRouter
            from .stdio import run_stdio

            registry = CapabilityRegistry(build_adapters(config, config.MCP_SERVER_TYPE))
            asyncio.run(run_stdio(registry, DispatchRouter(registry)))
        else:
            import uvicorn

            from .gateway import create_app

            uvicorn.run(create_app(config), host=config.MCP_HOST, port=config.MCP_PORT)
    except KeyboardInterrupt:
        logger.info("Shutting down")
    return 0


if __name__ == "__main__":
    sys.exit(main())
