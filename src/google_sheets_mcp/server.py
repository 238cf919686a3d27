#!/usr/bin/env python
"""
Google Sheets MCP Server
A Model Context Protocol (MCP) server built with FastMCP for interacting with Google Sheets.
"""

import argparse
import asyncio
import json
import logging
import os
import re
import sys
from typing import List, Dict, Any, Optional
from dataclasses import dataclass
from contextlib import asynccontextmanager
from collections.abc import AsyncIterator

from dotenv import load_dotenv

# MCP imports
from mcp.server.fastmcp import FastMCP, Context
from mcp.types import ToolAnnotations

from .config import Settings
from .credentials import Credential, CredentialResolver, describe_failure
from .errors import SheetsAuthError
from .startup import StartupOrchestrator, StartupState

logger = logging.getLogger(__name__)

load_dotenv()

SETTINGS = Settings.from_env()
SPREADSHEET_MIME_TYPE = 'application/vnd.google-apps.spreadsheet'
SHARE_ROLES = ('reader', 'commenter', 'writer')
DEFAULT_SHEET = 'Sheet1'

credentials = CredentialResolver(SETTINGS)


# Tool filtering configuration
# Parse enabled tools from environment variable or command-line argument
def _parse_enabled_tools(argv: Optional[List[str]] = None, environ: Optional[Dict[str, str]] = None) -> Optional[set]:
    """
    Parse enabled tools from ENABLED_TOOLS environment variable or --include-tools argument.
    Returns None if all tools should be enabled (default behavior).
    Returns a set of tool names if filtering is requested.
    """
    argv = sys.argv if argv is None else argv
    environ = os.environ if environ is None else environ

    # Check command-line arguments first
    enabled_tools_str = None
    for i, arg in enumerate(argv):
        if arg == '--include-tools' and i + 1 < len(argv):
            enabled_tools_str = argv[i + 1]
            break

    # Fall back to environment variable
    if not enabled_tools_str:
        enabled_tools_str = environ.get('ENABLED_TOOLS')

    if not enabled_tools_str:
        return None  # No filtering, enable all tools

    # Parse comma-separated list and normalize
    tools = {tool.strip() for tool in enabled_tools_str.split(',') if tool.strip()}
    return tools if tools else None

ENABLED_TOOLS = _parse_enabled_tools()


@dataclass
class SpreadsheetContext:
    """Context for Google Spreadsheet services, backed by whichever credential was acquired"""
    credential: Credential
    folder_id: Optional[str] = None

    @property
    def sheets_service(self):
        return self.credential.service('sheets', 'v4')

    @property
    def drive_service(self):
        return self.credential.service('drive', 'v3')


@asynccontextmanager
async def spreadsheet_lifespan(server: FastMCP) -> AsyncIterator[SpreadsheetContext]:
    """Provide the authenticated services; credential acquisition already ran in main()"""
    credential = await credentials.aresolve()
    logger.info("Google Sheets services use %s credentials", credential.source)
    yield SpreadsheetContext(credential=credential, folder_id=SETTINGS.drive_folder_id)


# Initialize the MCP server with explicit host/port to ensure binding as configured
mcp = FastMCP("Google Sheets",
              lifespan=spreadsheet_lifespan,
              host=SETTINGS.host,
              port=SETTINGS.port)


def tool(annotations: Optional[ToolAnnotations] = None):
    """
    Conditional tool decorator that only registers tools if they're enabled.

    If ENABLED_TOOLS is None (default), all tools are enabled; otherwise the
    function is returned undecorated.
    """
    def decorator(func):
        if ENABLED_TOOLS is None or func.__name__ in ENABLED_TOOLS:
            if annotations:
                return mcp.tool(annotations=annotations)(func)
            return mcp.tool()(func)
        return func

    return decorator


def _services(ctx: Context) -> SpreadsheetContext:
    return ctx.request_context.lifespan_context


def _full_range(sheet: str, range: Optional[str]) -> str:
    return f"{sheet}!{range}" if range else sheet


def _require_rows(values: Any, name: str = 'values') -> None:
    if not isinstance(values, list) or not values or not all(isinstance(row, list) for row in values):
        raise ValueError(f"{name} must be a non-empty 2D array")


def _spreadsheet_url(spreadsheet_id: str) -> str:
    return f"https://docs.google.com/spreadsheets/d/{spreadsheet_id}/edit"


# ---------------------------------------------------------------------------
# Spreadsheet management
# ---------------------------------------------------------------------------


@tool(
    annotations=ToolAnnotations(
        title="List Spreadsheets",
        readOnlyHint=True,
    ),
)
def list_spreadsheets(folder_id: Optional[str] = None, ctx: Context = None) -> Dict[str, Any]:
    """
    List spreadsheets accessible to the authenticated account, newest first.

    Args:
        folder_id: Optional Google Drive folder ID to search in.
                  If not provided, uses DRIVE_FOLDER_ID or searches all of 'My Drive'.

    Returns:
        The spreadsheets (id, title, created/modified times) and their count
    """
    context = _services(ctx)
    # Use provided folder_id or fall back to configured default
    target_folder_id = folder_id or context.folder_id

    query = f"mimeType='{SPREADSHEET_MIME_TYPE}'"
    if target_folder_id:
        query += f" and '{target_folder_id}' in parents"
        logger.info("Searching for spreadsheets in folder: %s", target_folder_id)

    results = context.drive_service.files().list(
        q=query,
        spaces='drive',
        includeItemsFromAllDrives=True,
        supportsAllDrives=True,
        fields='files(id, name, createdTime, modifiedTime)',
        orderBy='modifiedTime desc'
    ).execute()

    spreadsheets = [
        {
            'id': f['id'],
            'title': f['name'],
            'createdTime': f.get('createdTime'),
            'modifiedTime': f.get('modifiedTime'),
        }
        for f in results.get('files', [])
    ]
    return {'spreadsheets': spreadsheets, 'count': len(spreadsheets)}


@tool(
    annotations=ToolAnnotations(
        title="Create Spreadsheet",
        destructiveHint=True,
    ),
)
def create_spreadsheet(title: str, folder_id: Optional[str] = None, ctx: Context = None) -> Dict[str, Any]:
    """
    Create a new Google Spreadsheet.

    Args:
        title: The title of the new spreadsheet
        folder_id: Optional Google Drive folder ID where the spreadsheet should be created.
                  If not provided, uses DRIVE_FOLDER_ID or creates in root.

    Returns:
        The new spreadsheet's ID, title, folder and URL
    """
    context = _services(ctx)
    target_folder_id = folder_id or context.folder_id

    file_body = {
        'name': title,
        'mimeType': SPREADSHEET_MIME_TYPE,
    }
    if target_folder_id:
        file_body['parents'] = [target_folder_id]

    spreadsheet = context.drive_service.files().create(
        supportsAllDrives=True,
        body=file_body,
        fields='id, name, parents'
    ).execute()

    spreadsheet_id = spreadsheet.get('id')
    parents = spreadsheet.get('parents')
    logger.info("Spreadsheet created with ID: %s in %s", spreadsheet_id, target_folder_id or "root")

    return {
        'spreadsheetId': spreadsheet_id,
        'title': spreadsheet.get('name', title),
        'folder': parents[0] if parents else 'root',
        'url': _spreadsheet_url(spreadsheet_id),
    }


def _spreadsheet_info(sheets_service, spreadsheet_id: str) -> Dict[str, Any]:
    spreadsheet = sheets_service.spreadsheets().get(
        spreadsheetId=spreadsheet_id,
        fields='spreadsheetId,properties,sheets.properties'
    ).execute()
    properties = spreadsheet.get('properties', {})
    return {
        'spreadsheetId': spreadsheet.get('spreadsheetId', spreadsheet_id),
        'title': properties.get('title', 'Unknown'),
        'locale': properties.get('locale'),
        'timeZone': properties.get('timeZone'),
        'sheets': [
            {
                'sheetId': sheet['properties']['sheetId'],
                'title': sheet['properties']['title'],
                'index': sheet['properties'].get('index'),
                'gridProperties': sheet['properties'].get('gridProperties', {}),
            }
            for sheet in spreadsheet.get('sheets', [])
        ],
        'url': _spreadsheet_url(spreadsheet_id),
    }


@tool(
    annotations=ToolAnnotations(
        title="Get Spreadsheet Info",
        readOnlyHint=True,
    ),
)
def get_spreadsheet_info(spreadsheet_id: str, ctx: Context = None) -> Dict[str, Any]:
    """
    Get a spreadsheet's properties and the list of its sheets.

    Args:
        spreadsheet_id: The ID of the spreadsheet (found in the URL)
    """
    return _spreadsheet_info(_services(ctx).sheets_service, spreadsheet_id)


@mcp.resource("spreadsheet://{spreadsheet_id}/info")
async def spreadsheet_info_resource(spreadsheet_id: str) -> str:
    """JSON description of a spreadsheet and its sheets."""
    credential = await credentials.aresolve()
    info = _spreadsheet_info(credential.service('sheets', 'v4'), spreadsheet_id)
    return json.dumps(info, indent=2)


# ---------------------------------------------------------------------------
# Sheet management
# ---------------------------------------------------------------------------


@tool(
    annotations=ToolAnnotations(
        title="List Sheets",
        readOnlyHint=True,
    ),
)
def list_sheets(spreadsheet_id: str, ctx: Context = None) -> Dict[str, Any]:
    """
    List all sheets (tabs) in a Google Spreadsheet.

    Args:
        spreadsheet_id: The ID of the spreadsheet (found in the URL)

    Returns:
        The sheets with their ID, title and index, and their count
    """
    sheets = _spreadsheet_info(_services(ctx).sheets_service, spreadsheet_id)['sheets']
    return {'sheets': sheets, 'count': len(sheets)}


@tool(
    annotations=ToolAnnotations(
        title="Create Sheet",
        destructiveHint=True,
    ),
)
def create_sheet(spreadsheet_id: str,
                 title: str,
                 ctx: Context = None) -> Dict[str, Any]:
    """
    Create a new sheet tab in an existing Google Spreadsheet.

    Args:
        spreadsheet_id: The ID of the spreadsheet
        title: The title for the new sheet

    Returns:
        Information about the newly created sheet
    """
    sheets_service = _services(ctx).sheets_service

    request_body = {
        "requests": [
            {
                "addSheet": {
                    "properties": {
                        "title": title
                    }
                }
            }
        ]
    }

    result = sheets_service.spreadsheets().batchUpdate(
        spreadsheetId=spreadsheet_id,
        body=request_body
    ).execute()

    new_sheet_props = result['replies'][0]['addSheet']['properties']

    return {
        'sheetId': new_sheet_props['sheetId'],
        'title': new_sheet_props['title'],
        'index': new_sheet_props.get('index'),
        'spreadsheetId': spreadsheet_id
    }


# ---------------------------------------------------------------------------
# Data operations
# ---------------------------------------------------------------------------


def _read_values(sheets_service, spreadsheet_id: str, full_range: str) -> Dict[str, Any]:
    return sheets_service.spreadsheets().values().get(
        spreadsheetId=spreadsheet_id,
        range=full_range,
        valueRenderOption='UNFORMATTED_VALUE',
        dateTimeRenderOption='FORMATTED_STRING'
    ).execute()


@tool(
    annotations=ToolAnnotations(
        title="Get Sheet Data",
        readOnlyHint=True,
    ),
)
def get_sheet_data(spreadsheet_id: str,
                   sheet: str = DEFAULT_SHEET,
                   range: Optional[str] = None,
                   ctx: Context = None) -> Dict[str, Any]:
    """
    Read values from a sheet in a Google Spreadsheet.

    Args:
        spreadsheet_id: The ID of the spreadsheet (found in the URL)
        sheet: The name of the sheet. Defaults to 'Sheet1'.
        range: Optional cell range in A1 notation (e.g., 'A1:C10'). If not provided, reads the whole sheet.

    Returns:
        The values, the resolved range and the row/column counts
    """
    result = _read_values(_services(ctx).sheets_service, spreadsheet_id, _full_range(sheet, range))
    values = result.get('values', [])
    return {
        'range': result.get('range'),
        'majorDimension': result.get('majorDimension', 'ROWS'),
        'values': values,
        'rowCount': len(values),
        'columnCount': max((len(row) for row in values), default=0),
    }


@tool(
    annotations=ToolAnnotations(
        title="Update Cells",
        destructiveHint=True,
    ),
)
def update_cells(spreadsheet_id: str,
                 range: str,
                 data: List[List[Any]],
                 sheet: str = DEFAULT_SHEET,
                 ctx: Context = None) -> Dict[str, Any]:
    """
    Overwrite cells in a Google Spreadsheet.

    Args:
        spreadsheet_id: The ID of the spreadsheet (found in the URL)
        range: Cell range in A1 notation (e.g., 'A1:C10')
        data: 2D array of values to write, one inner list per row
        sheet: The name of the sheet. Defaults to 'Sheet1'.

    Returns:
        Counts of the updated cells, rows and columns and the updated range
    """
    _require_rows(data, 'data')

    result = _services(ctx).sheets_service.spreadsheets().values().update(
        spreadsheetId=spreadsheet_id,
        range=_full_range(sheet, range),
        valueInputOption='USER_ENTERED',
        body={'values': data}
    ).execute()

    return {
        'updatedCells': result.get('updatedCells', 0),
        'updatedRows': result.get('updatedRows', 0),
        'updatedColumns': result.get('updatedColumns', 0),
        'updatedRange': result.get('updatedRange'),
    }


@tool(
    annotations=ToolAnnotations(
        title="Append Rows",
        destructiveHint=True,
    ),
)
def append_rows(spreadsheet_id: str,
                data: List[List[Any]],
                sheet: str = DEFAULT_SHEET,
                ctx: Context = None) -> Dict[str, Any]:
    """
    Append rows after the last row with data in a sheet.

    Args:
        spreadsheet_id: The ID of the spreadsheet (found in the URL)
        data: 2D array of values to append, one inner list per row
        sheet: The name of the sheet. Defaults to 'Sheet1'.
    """
    _require_rows(data, 'data')

    result = _services(ctx).sheets_service.spreadsheets().values().append(
        spreadsheetId=spreadsheet_id,
        range=sheet,
        valueInputOption='USER_ENTERED',
        insertDataOption='INSERT_ROWS',
        body={'values': data}
    ).execute()

    updates = result.get('updates', {})
    return {
        'appendedRows': len(data),
        'updatedCells': updates.get('updatedCells', 0),
        'updatedRange': updates.get('updatedRange'),
        'tableRange': result.get('tableRange'),
    }


@tool(
    annotations=ToolAnnotations(
        title="Batch Update Cells",
        destructiveHint=True,
    ),
)
def batch_update_cells(spreadsheet_id: str,
                       updates: List[Dict[str, Any]],
                       ctx: Context = None) -> Dict[str, Any]:
    """
    Update several ranges, possibly on different sheets, in one request.

    Args:
        spreadsheet_id: The ID of the spreadsheet (found in the URL)
        updates: List of {'sheet': name, 'range': A1 range, 'values': 2D array}.
                 'sheet' defaults to 'Sheet1'.
                 e.g., [{'sheet': 'Sheet1', 'range': 'A1:B2', 'values': [[1, 2], [3, 4]]}]

    Returns:
        Totals of updated cells, rows and columns and the per-range responses
    """
    if not isinstance(updates, list) or not updates:
        raise ValueError("updates must be a non-empty list")

    data = []
    for update in updates:
        if not isinstance(update, dict) or not update.get('range'):
            raise ValueError("Each update needs a 'range' and 'values'")
        _require_rows(update.get('values'))
        sheet = update.get('sheet') or update.get('sheet_name') or DEFAULT_SHEET
        data.append({
            'range': _full_range(sheet, update['range']),
            'values': update['values']
        })

    result = _services(ctx).sheets_service.spreadsheets().values().batchUpdate(
        spreadsheetId=spreadsheet_id,
        body={
            'valueInputOption': 'USER_ENTERED',
            'data': data
        }
    ).execute()

    return {
        'totalUpdatedCells': result.get('totalUpdatedCells', 0),
        'totalUpdatedRows': result.get('totalUpdatedRows', 0),
        'totalUpdatedColumns': result.get('totalUpdatedColumns', 0),
        'responses': result.get('responses', []),
    }


# ---------------------------------------------------------------------------
# Collaboration
# ---------------------------------------------------------------------------


def _http_error_message(e: Exception) -> str:
    """Prefer the API's own error message when the exception carries a JSON body."""
    content = getattr(e, 'content', None)
    if content:
        try:
            return json.loads(content).get('error', {}).get('message') or str(e)
        except (ValueError, AttributeError):
            pass
    return str(e)


@tool(
    annotations=ToolAnnotations(
        title="Share Spreadsheet",
        destructiveHint=True,
    ),
)
def share_spreadsheet(spreadsheet_id: str,
                      recipients: List[Dict[str, str]],
                      send_notification: bool = True,
                      ctx: Context = None) -> Dict[str, List[Dict[str, Any]]]:
    """
    Share a Google Spreadsheet with users by email.

    Args:
        spreadsheet_id: The ID of the spreadsheet to share.
        recipients: A list of {'email': address, 'role': role}. The role is one of
                    'reader' (default), 'commenter' or 'writer'.
                    Example: [{'email': 'user1@example.com', 'role': 'writer'}]
        send_notification: Whether to send a notification email. Defaults to True.

    Returns:
        Lists of 'successes' and 'failures', one entry per recipient.
    """
    if not isinstance(recipients, list) or not recipients:
        raise ValueError("recipients must be a non-empty list")
    for recipient in recipients:
        if not (recipient.get('email') or recipient.get('email_address')):
            raise ValueError("Each recipient must have an email address")
        role = recipient.get('role', 'reader')
        if role not in SHARE_ROLES:
            raise ValueError(f"Invalid role '{role}'. Must be 'reader', 'commenter', or 'writer'")

    drive_service = _services(ctx).drive_service
    successes = []
    failures = []

    for recipient in recipients:
        email_address = recipient.get('email') or recipient.get('email_address')
        role = recipient.get('role', 'reader')
        permission = {
            'type': 'user',
            'role': role,
            'emailAddress': email_address
        }
        try:
            result = drive_service.permissions().create(
                fileId=spreadsheet_id,
                body=permission,
                sendNotificationEmail=send_notification,
                fields='id'
            ).execute()
        except Exception as e:
            failures.append({
                'email': email_address,
                'error': f"Failed to share: {_http_error_message(e)}"
            })
            continue
        successes.append({
            'email': email_address,
            'role': role,
            'permissionId': result.get('id')
        })

    return {"successes": successes, "failures": failures}


# ---------------------------------------------------------------------------
# Utility
# ---------------------------------------------------------------------------


@tool(
    annotations=ToolAnnotations(
        title="Clear Range",
        destructiveHint=True,
    ),
)
def clear_range(spreadsheet_id: str,
                range: str,
                sheet: str = DEFAULT_SHEET,
                ctx: Context = None) -> Dict[str, Any]:
    """
    Clear the values in a range while keeping its formatting.

    Args:
        spreadsheet_id: The ID of the spreadsheet (found in the URL)
        range: Cell range in A1 notation (e.g., 'A1:C10')
        sheet: The name of the sheet. Defaults to 'Sheet1'.
    """
    result = _services(ctx).sheets_service.spreadsheets().values().clear(
        spreadsheetId=spreadsheet_id,
        range=_full_range(sheet, range),
        body={}
    ).execute()
    return {'clearedRange': result.get('clearedRange')}


def replace_in_values(values: List[List[Any]],
                      find: str,
                      replace: str,
                      match_case: bool = False,
                      match_entire_cell: bool = False):
    """Return (new_values, replacements) with ``find`` replaced in every matching cell."""
    pattern = re.compile(re.escape(find), 0 if match_case else re.IGNORECASE)
    replacements = 0
    updated = []
    for row in values:
        new_row = []
        for cell in row:
            if cell is None or cell == '':
                new_row.append(cell)
                continue
            text = str(cell)
            if match_entire_cell:
                matched = text == find if match_case else text.lower() == find.lower()
                if matched:
                    replacements += 1
                    new_row.append(replace)
                else:
                    new_row.append(cell)
            elif pattern.search(text):
                replacements += 1
                new_row.append(pattern.sub(lambda _: replace, text))
            else:
                new_row.append(cell)
        updated.append(new_row)
    return updated, replacements


@tool(
    annotations=ToolAnnotations(
        title="Find and Replace",
        destructiveHint=True,
    ),
)
def find_and_replace(spreadsheet_id: str,
                     find: str,
                     replace: str,
                     sheet: str = DEFAULT_SHEET,
                     range: Optional[str] = None,
                     match_case: bool = False,
                     match_entire_cell: bool = False,
                     ctx: Context = None) -> Dict[str, Any]:
    """
    Find and replace text in a sheet or a range of it.

    Args:
        spreadsheet_id: The ID of the spreadsheet (found in the URL)
        find: The text to find
        replace: The replacement text
        sheet: The name of the sheet. Defaults to 'Sheet1'.
        range: Optional A1 range limiting the search. Searches the whole sheet if omitted.
        match_case: Whether matching is case-sensitive
        match_entire_cell: Whether the whole cell must equal ``find``

    Returns:
        The number of cells changed
    """
    if not find:
        raise ValueError("find must not be empty")

    sheets_service = _services(ctx).sheets_service
    full_range = _full_range(sheet, range)
    # Read formulas so rewriting the range does not flatten them into values
    current = sheets_service.spreadsheets().values().get(
        spreadsheetId=spreadsheet_id,
        range=full_range,
        valueRenderOption='FORMULA'
    ).execute()
    values = current.get('values', [])
    if not values:
        return {'replacements': 0, 'message': "No data found in the specified range"}

    updated, replacements = replace_in_values(values, find, replace, match_case, match_entire_cell)
    if replacements:
        # values.get returns the range anchored at the top-left cell it read
        sheets_service.spreadsheets().values().update(
            spreadsheetId=spreadsheet_id,
            range=current.get('range', full_range),
            valueInputOption='USER_ENTERED',
            body={'values': updated}
        ).execute()

    return {'replacements': replacements}


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="google-sheets-mcp",
        description="Run the Google Sheets MCP server or its OAuth helpers.",
    )
    parser.add_argument('--transport', default='stdio',
                        choices=['stdio', 'sse', 'streamable-http'],
                        help="MCP transport (default: stdio).")
    parser.add_argument('--include-tools',
                        help="Comma-separated list of tools to enable (default: all).")
    subparsers = parser.add_subparsers(dest='command')
    subparsers.add_parser('serve', help="Start the MCP server (default).")
    subparsers.add_parser('authorize', help="Run the interactive OAuth flow and store the token.")
    subparsers.add_parser('check', help="Verify the configured credentials by listing a spreadsheet.")
    return parser


def configure_logging(level: str) -> None:
    # stdout carries the stdio JSON-RPC channel, so logs go to stderr
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        stream=sys.stderr,
        format='%(asctime)s %(levelname)s %(name)s: %(message)s',
    )


def authorize() -> None:
    """Bring the stored OAuth token to a usable state, prompting the user if needed."""
    result = asyncio.run(StartupOrchestrator(SETTINGS.oauth).run())
    if result.state is StartupState.CONFIGURATION_ABSENT:
        raise SystemExit(
            "OAuth is not configured. Set CREDENTIALS_PATH (OAuth client JSON) and "
            "TOKEN_PATH (where the token is stored), then run this command again."
        )
    logger.info("OAuth token ready; valid until %s", result.grant.expiry.isoformat())


def check() -> None:
    """Acquire credentials and make one Drive call with them."""
    credential = credentials.resolve()
    drive_service = credential.service('drive', 'v3')
    response = drive_service.files().list(
        q=f"mimeType='{SPREADSHEET_MIME_TYPE}'",
        pageSize=1,
        fields='files(id, name)'
    ).execute()
    logger.info("Connection test successful using %s credentials; found %d spreadsheet(s)",
                credential.source, len(response.get('files', [])))


def main(argv: Optional[List[str]] = None) -> None:
    args = build_parser().parse_args(argv)
    configure_logging(SETTINGS.log_level)

    try:
        if args.command == 'authorize':
            authorize()
            return
        if args.command == 'check':
            check()
            return

        # Log tool filtering configuration if enabled
        if ENABLED_TOOLS is not None:
            logger.info("Tool filtering enabled. Active tools: %s", ', '.join(sorted(ENABLED_TOOLS)))

        # Credentials are acquired before the transport starts accepting tool calls
        credentials.resolve()
    except SheetsAuthError as e:
        print(f"Google Sheets MCP server cannot start:\n{describe_failure(e)}", file=sys.stderr)
        sys.exit(1)

    mcp.run(transport=args.transport)


if __name__ == "__main__":
    main()
