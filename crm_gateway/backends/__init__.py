"""Backend adapters and the factory that wires them from configuration."""

import logging
from typing import List

from google.auth.exceptions import GoogleAuthError

from ..config import GatewayConfig
from .base import BackendAdapter
from .calendly import CalendlyAdapter
from .email import EmailAdapter
from .sheets import SheetsAdapter

logger = logging.getLogger(__name__)

__all__ = ["BackendAdapter", "CalendlyAdapter", "EmailAdapter", "SheetsAdapter", "build_adapters"]


def build_adapters(config: GatewayConfig, server_type: str = "all") -> List[BackendAdapter]:
    """
    Build the adapters for every configured backend selected by ``server_type``.

    Order is fixed (sheets, calendly, email) so the capability list is
    deterministic. Unconfigured backends and backends whose client cannot be
    built are skipped with a log line; they simply contribute no tools.
    """
    adapters: List[BackendAdapter] = []

    if server_type in ("all", "sheets"):
        if config.sheets_configured:
            try:
                adapters.append(SheetsAdapter.from_credentials_file(
                    config.GOOGLE_SHEETS_CREDENTIALS_PATH,
                    config.GOOGLE_SHEETS_SPREADSHEET_ID,
                    config.GOOGLE_SHEETS_SHEET_NAME,
                ))
            except (OSError, ValueError, GoogleAuthError) as e:
                logger.error(f"Google Sheets backend unavailable: {e}")
        else:
            logger.warning("Google Sheets not configured - sheets tools disabled")

    if server_type in ("all", "calendly"):
        if config.calendly_configured:
            adapters.append(CalendlyAdapter(config.CALENDLY_API_TOKEN, config.CALENDLY_ORGANIZATION_URI))
        else:
            logger.warning("Calendly not configured - calendly tools disabled")

    if server_type in ("all", "email"):
        if config.sendgrid_configured:
            adapters.append(EmailAdapter(
                config.SENDGRID_API_KEY,
                config.SENDGRID_FROM_EMAIL,
                config.SENDGRID_FROM_NAME,
            ))
        else:
            logger.warning("SendGrid not configured - email tools disabled")

    return adapters
