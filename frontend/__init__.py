"""
╔══════════════════════════════════════════╗
║     MAILBRIDGE — Tool Front-end          ║
╚══════════════════════════════════════════╝

Mail tool catalogue + invocation for the MCP controller.
"""

from frontend.tools import MAIL_TOOLS, TOOL_SPECS, ToolSpec
from frontend.dispatcher import NO_WORKER_HINT, ToolFrontend, ToolResult
