"""Gateway configuration loaded from environment variables."""

import os
from typing import List, Mapping, Optional

DEFAULT_ALLOWED_ORIGINS = [
    "localhost",
    "127.0.0.1",
    "openai.com",
    "api.openai.com",
    "ngrok-free.app",
    "ngrok.app",
]

SERVER_TYPES = ("all", "sheets", "calendly", "email")
TRANSPORTS = ("http", "stdio")


def _split_list(value: str) -> List[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


def mask_secret(value: str) -> str:
    """Mask a credential for log output, keeping its first 8 and last 4 chars."""
    if not value:
        return ""
    if len(value) <= 12:
        return "*" * len(value)
    return f"{value[:8]}...{value[-4:]}"


class GatewayConfig:
    """Central configuration loaded from environment variables."""

    def __init__(self, environ: Optional[Mapping[str, str]] = None):
        env = os.environ if environ is None else environ

        # Google Sheets
        self.GOOGLE_SHEETS_CREDENTIALS_PATH = env.get("GOOGLE_SHEETS_CREDENTIALS_PATH", "")
        self.GOOGLE_SHEETS_SPREADSHEET_ID = env.get("GOOGLE_SHEETS_SPREADSHEET_ID", "")
        self.GOOGLE_SHEETS_SHEET_NAME = env.get("GOOGLE_SHEETS_SHEET_NAME") or "CustomerRecords"

        # Calendly
        self.CALENDLY_API_TOKEN = env.get("CALENDLY_API_TOKEN", "")
        self.CALENDLY_ORGANIZATION_URI = env.get("CALENDLY_ORGANIZATION_URI", "")

        # SendGrid
        self.SENDGRID_API_KEY = env.get("SENDGRID_API_KEY", "")
        self.SENDGRID_FROM_EMAIL = env.get("SENDGRID_FROM_EMAIL", "")
        self.SENDGRID_FROM_NAME = env.get("SENDGRID_FROM_NAME") or "CRM Support"

        # Gateway
        self.MCP_SERVER_TYPE = (env.get("MCP_SERVER_TYPE") or "all").lower()
        self.MCP_TRANSPORT = (env.get("MCP_TRANSPORT") or "http").lower()
        self.MCP_HOST = env.get("MCP_HOST") or "0.0.0.0"
        self.MCP_PORT = int(env.get("MCP_PORT") or 3100)
        self.MCP_PATH = env.get("MCP_PATH") or "/mcp"
        origins = env.get("MCP_ALLOWED_ORIGINS", "")
        self.MCP_ALLOWED_ORIGINS = _split_list(origins) if origins else list(DEFAULT_ALLOWED_ORIGINS)
        self.MCP_API_KEY = env.get("MCP_API_KEY", "")
        self.LOG_LEVEL = (env.get("LOG_LEVEL") or "INFO").upper()

    @property
    def sheets_configured(self) -> bool:
        return bool(self.GOOGLE_SHEETS_CREDENTIALS_PATH and self.GOOGLE_SHEETS_SPREADSHEET_ID)

    @property
    def calendly_configured(self) -> bool:
        return bool(self.CALENDLY_API_TOKEN and self.CALENDLY_ORGANIZATION_URI)

    @property
    def sendgrid_configured(self) -> bool:
        return bool(self.SENDGRID_API_KEY and self.SENDGRID_FROM_EMAIL)

    def configured_backends(self) -> dict:
        return {
            "googleSheets": self.sheets_configured,
            "calendly": self.calendly_configured,
            "sendgrid": self.sendgrid_configured,
        }
