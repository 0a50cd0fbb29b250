"""
╔══════════════════════════════════════════════════════════╗
║      MAILBRIDGE — Front-end: Tool Invocation             ║
╠══════════════════════════════════════════════════════════╣
║  tool call → validate → command frame → relay.send()     ║
║  → post-process → ToolResult (text + is_error flag)      ║
║                                                          ║
║  Every outcome becomes a ToolResult; nothing raised by   ║
║  the bridge reaches the MCP layer.                       ║
╚══════════════════════════════════════════════════════════╝
"""

import json
import logging
from dataclasses import dataclass

from frontend import postprocess
from frontend.tools import MAIL_TOOLS, TOOL_SPECS
from relay.errors import BridgeError, NoWorkerConnected

logger = logging.getLogger("mailbridge.frontend")

NO_WORKER_HINT = "Make sure the Thunderbird addon is loaded and connected to the C&C server"


@dataclass
class ToolResult:
    text: str
    is_error: bool = False

    @classmethod
    def ok(cls, payload):
        return cls(json.dumps(payload, indent=2, default=str), False)

    @classmethod
    def error(cls, message, hint=None):
        body = {"error": message}
        if hint:
            body["hint"] = hint
        return cls(json.dumps(body), True)


class ToolFrontend:
    """Turns controller tool calls into bridge commands."""

    def __init__(self, transport):
        self.transport = transport
        self.specs = TOOL_SPECS
        self._post = {
            "read_email": self._post_read_email,
            "read_email_attachments": self._post_read_email_attachments,
            "download_attachment": self._post_download_attachment,
        }

    def list_tools(self):
        return list(MAIL_TOOLS)

    async def invoke(self, name: str, arguments=None) -> ToolResult:
        arguments = dict(arguments or {})
        spec = self.specs.get(name)
        if spec is None:
            return ToolResult.error(f"Unknown tool: {name}")

        problems = spec.validate(arguments)
        if problems:
            return ToolResult.error("; ".join(problems))

        payload = spec.build_payload(arguments)
        timeout = self.transport.search_timeout if spec.extended_timeout else None

        try:
            result = await self.transport.send(name, payload, timeout=timeout)
        except NoWorkerConnected as e:
            return ToolResult.error(str(e), hint=NO_WORKER_HINT)
        except BridgeError as e:
            logger.warning(f"[!] {name} failed: {e}")
            return ToolResult.error(str(e))

        if isinstance(result, dict) and result.get("success") is False:
            # Executor-reported failure, passed through verbatim
            return ToolResult(json.dumps(result, indent=2, default=str), True)

        post = self._post.get(name)
        if post is not None:
            try:
                result = await post(result, arguments)
            except Exception as e:
                logger.error(f"[!] Post-processing {name} failed: {e}")
                return ToolResult.error(f"{name} post-processing failed: {e}")

        return ToolResult.ok(result)

    # ── Post-processing ─────────────────────────────

    async def _post_read_email(self, result, arguments):
        return postprocess.convert_email_body(result)

    async def _post_read_email_attachments(self, result, arguments):
        return await postprocess.save_attachments(result, arguments["downloadPath"])

    async def _post_download_attachment(self, result, arguments):
        return await postprocess.save_attachment(result, arguments["downloadPath"])
