"""Google Sheets MCP server with service account and delegated OAuth credentials."""

__version__ = "0.3.0"
