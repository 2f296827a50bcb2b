"""
CRM MCP Gateway
===============
Exposes a Google Sheets customer-record store, Calendly scheduling and
SendGrid email as MCP tools, over stdio (desktop clients) and streamable
HTTP with SSE (cloud agent platforms).
"""

__version__ = "1.0.0"

SERVER_NAME = "crm-mcp-server"
