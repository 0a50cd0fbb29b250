"""
╔══════════════════════════════════════════════════════════════╗
║      MAILBRIDGE — Front-end: Mail Tool Definitions           ║
╠══════════════════════════════════════════════════════════════╣
║  The tool catalogue exposed to the MCP controller.           ║
║  Each tool name doubles as the worker command type; its      ║
║  input_schema is the single payload shape for that command.  ║
║                                                              ║
║  Property "default" values are applied before sending.       ║
║  Fields listed in LOCAL_FIELDS never go over the wire:       ║
║  they drive front-end post-processing only.                  ║
╚══════════════════════════════════════════════════════════════╝
"""

from typing import Dict, List

LOCAL_FIELDS = {"downloadPath"}

# Tools that get bridge.search_timeout instead of bridge.request_timeout
EXTENDED_TIMEOUT_TOOLS = {"search_emails"}

# A falsy value (e.g. limit 0) falls back to the property default
FALSY_DEFAULT_FIELDS = {"limit"}


MAIL_TOOLS = [
    {
        "name": "list_accounts",
        "description": "List all email accounts configured in Thunderbird",
        "input_schema": {
            "type": "object",
            "properties": {},
        },
    },
    {
        "name": "list_folders",
        "description": "List all folders for a specific account or all accounts",
        "input_schema": {
            "type": "object",
            "properties": {
                "accountId": {
                    "type": "string",
                    "description": "Optional account ID to list folders for (lists all accounts if not specified)",
                },
            },
        },
    },
    {
        "name": "list_unread_emails",
        "description": "List all unread emails from all accounts or a specific folder",
        "input_schema": {
            "type": "object",
            "properties": {
                "accountId": {"type": "string", "description": "Optional account ID to filter emails"},
                "folderId": {"type": "string", "description": "Optional folder ID to filter emails"},
                "limit": {
                    "type": "number",
                    "description": "Maximum number of emails to return (default: 50)",
                    "default": 50,
                },
                "includeSpam": {
                    "type": "boolean",
                    "description": "Whether to include spam/junk/newsletter folders (default: false)",
                    "default": False,
                },
                "afterDate": {
                    "type": "string",
                    "description": "Only return emails after this date (ISO 8601 format, e.g., '2024-01-01T00:00:00Z'). Defaults to no filter.",
                },
            },
        },
    },
    {
        "name": "search_emails",
        "description": "Search for emails using various criteria",
        "input_schema": {
            "type": "object",
            "properties": {
                "query": {"type": "string", "description": "Search query (searches subject, body, from, to)"},
                "accountId": {"type": "string", "description": "Optional account ID to search within"},
                "folderId": {"type": "string", "description": "Optional folder ID to search within"},
                "from": {"type": "string", "description": "Filter by sender email address"},
                "to": {"type": "string", "description": "Filter by recipient email address"},
                "subject": {"type": "string", "description": "Filter by subject line"},
                "unread": {"type": "boolean", "description": "Filter by unread status"},
                "flagged": {"type": "boolean", "description": "Filter by flagged status"},
                "limit": {
                    "type": "number",
                    "description": "Maximum number of results (default: 50)",
                    "default": 50,
                },
            },
        },
    },
    {
        "name": "read_email_raw",
        "description": "Read the raw full content of a specific email with all headers and original format",
        "input_schema": {
            "type": "object",
            "properties": {
                "messageId": {"type": "number", "description": "The message ID to read"},
                "markAsRead": {
                    "type": "boolean",
                    "description": "Whether to mark the message as read (default: false)",
                    "default": False,
                },
            },
            "required": ["messageId"],
        },
    },
    {
        "name": "read_email",
        "description": "Read a specific email with important headers and body converted to markdown format",
        "input_schema": {
            "type": "object",
            "properties": {
                "messageId": {"type": "number", "description": "The message ID to read"},
                "markAsRead": {
                    "type": "boolean",
                    "description": "Whether to mark the message as read (default: false)",
                    "default": False,
                },
            },
            "required": ["messageId"],
        },
    },
    {
        "name": "read_email_attachments",
        "description": "Download all attachments from a specific email to a folder",
        "input_schema": {
            "type": "object",
            "properties": {
                "messageId": {"type": "number", "description": "The message ID containing the attachments"},
                "downloadPath": {
                    "type": "string",
                    "description": "Local file system path where attachments should be saved",
                },
            },
            "required": ["messageId", "downloadPath"],
        },
    },
    {
        "name": "send_email",
        "description": "Send a new email",
        "input_schema": {
            "type": "object",
            "properties": {
                "to": {"type": "array", "items": {"type": "string"}, "description": "Array of recipient email addresses"},
                "cc": {"type": "array", "items": {"type": "string"}, "description": "Array of CC email addresses"},
                "bcc": {"type": "array", "items": {"type": "string"}, "description": "Array of BCC email addresses"},
                "subject": {"type": "string", "description": "Email subject"},
                "body": {"type": "string", "description": "Email body (plain text or HTML)"},
                "isHtml": {
                    "type": "boolean",
                    "description": "Whether the body is HTML (default: false)",
                    "default": False,
                },
                "accountId": {
                    "type": "string",
                    "description": "Account ID to send from (uses default if not specified)",
                },
            },
            "required": ["to", "subject", "body"],
        },
    },
    {
        "name": "download_attachment",
        "description": "Download an email attachment to a specified folder",
        "input_schema": {
            "type": "object",
            "properties": {
                "messageId": {"type": "number", "description": "The message ID containing the attachment"},
                "partName": {"type": "string", "description": "The attachment part name/identifier"},
                "downloadPath": {
                    "type": "string",
                    "description": "Local file system path where the attachment should be saved",
                },
            },
            "required": ["messageId", "partName", "downloadPath"],
        },
    },
]


_JSON_TYPES = {
    "string": (str,),
    "number": (int, float),
    "integer": (int,),
    "boolean": (bool,),
    "array": (list, tuple),
    "object": (dict,),
}


def _matches_type(value, json_type) -> bool:
    expected = _JSON_TYPES.get(json_type)
    if expected is None:
        return True
    # bool is an int subclass; JSON keeps them apart
    if json_type in ("number", "integer") and isinstance(value, bool):
        return False
    return isinstance(value, expected)


class ToolSpec:
    """One tool's input shape plus how its command is sent."""

    def __init__(self, definition: dict):
        self.name = definition["name"]
        self.description = definition.get("description", "")
        self.input_schema = definition.get("input_schema", {"type": "object", "properties": {}})
        self.properties = self.input_schema.get("properties", {})
        self.required = list(self.input_schema.get("required", []))
        self.extended_timeout = self.name in EXTENDED_TIMEOUT_TOOLS

    def validate(self, arguments: dict) -> List[str]:
        """Return a list of problems with `arguments`; empty means valid.

        Only presence and JSON type are checked here. Value semantics
        (does this message exist, is that address valid) belong to the worker.
        """
        problems = []
        for field in self.required:
            if arguments.get(field) is None:
                problems.append(f"Missing required field: {field}")

        for field, value in arguments.items():
            prop = self.properties.get(field)
            if prop is None or value is None:
                continue
            if not _matches_type(value, prop.get("type")):
                problems.append(f"Field '{field}' must be of type {prop.get('type')}")
            elif prop.get("type") == "array" and "items" in prop:
                item_type = prop["items"].get("type")
                if any(not _matches_type(item, item_type) for item in value):
                    problems.append(f"Field '{field}' must contain only {item_type} values")
        return problems

    def build_payload(self, arguments: dict) -> dict:
        """Declared, non-local fields with defaults applied. Absent optionals are omitted."""
        payload = {}
        for field, prop in self.properties.items():
            if field in LOCAL_FIELDS:
                continue
            value = arguments.get(field)
            if "default" in prop and (value is None or (field in FALSY_DEFAULT_FIELDS and not value)):
                value = prop["default"]
            if value is not None:
                payload[field] = list(value) if isinstance(value, tuple) else value
        return payload


TOOL_SPECS: Dict[str, ToolSpec] = {d["name"]: ToolSpec(d) for d in MAIL_TOOLS}
