"""
╔══════════════════════════════════════════╗
║     MAILBRIDGE — Hands: MIME Parts       ║
╚══════════════════════════════════════════╝

Part tree, text-body lookup and attachment listing for
raw RFC 822 messages.

Part names follow IMAP section numbering: the root is "",
its children "1", "2", grandchildren "1.1", "1.2", ...
"""

from email import policy
from email.parser import BytesParser
from typing import Iterator, List, Optional, Tuple


def parse_message(raw: bytes):
    return BytesParser(policy=policy.default).parsebytes(raw)


def parse_headers(raw: bytes):
    return BytesParser(policy=policy.default).parsebytes(raw, headersonly=True)


def walk_parts(message, part_name="") -> Iterator[Tuple[str, object]]:
    """Yield (part_name, part) in depth-first pre-order."""
    yield part_name, message
    if message.is_multipart():
        for index, sub in enumerate(message.iter_parts(), 1):
            child = f"{part_name}.{index}" if part_name else str(index)
            yield from walk_parts(sub, child)


def is_attachment(part) -> bool:
    if part.is_multipart():
        return False
    return part.get_content_disposition() == "attachment" or bool(part.get_filename())


def part_bytes(part) -> bytes:
    return part.get_payload(decode=True) or b""


def part_text(part) -> str:
    try:
        return part.get_content()
    except (LookupError, ValueError):
        # Unknown or lying charset
        return part_bytes(part).decode("utf-8", errors="replace")


def _headers(part) -> dict:
    headers = {}
    for name, value in part.items():
        headers.setdefault(name.lower(), []).append(str(value))
    return headers


def build_part_tree(message, part_name="") -> dict:
    """Nested dict view of a message: contentType, partName, headers, body|parts."""
    node = {
        "contentType": message.get_content_type(),
        "partName": part_name,
        "headers": _headers(message),
    }
    filename = message.get_filename()
    if filename:
        node["name"] = filename

    if message.is_multipart():
        node["parts"] = [
            build_part_tree(sub, f"{part_name}.{i}" if part_name else str(i))
            for i, sub in enumerate(message.iter_parts(), 1)
        ]
    elif message.get_content_maintype() == "text" and not is_attachment(message):
        node["body"] = part_text(message)
    else:
        node["size"] = len(part_bytes(message))
    return node


def find_text_body(tree: dict) -> Optional[Tuple[str, bool]]:
    """First text/plain or text/html leaf with a body, as (text, is_html).

    Plain and HTML rank the same: the first match in depth-first pre-order
    wins. In a multipart/alternative that lists text/plain before text/html
    (the usual layout) the plain part is returned.
    """
    stack = [tree]
    while stack:
        node = stack.pop()
        content_type = node.get("contentType") or ""
        body = node.get("body")
        if body:
            if content_type.startswith("text/plain"):
                return body, False
            if content_type.startswith("text/html"):
                return body, True
        # Reversed so the first child is visited first
        stack.extend(reversed(node.get("parts") or []))
    return None


def list_attachments(message) -> List[dict]:
    attachments = []
    for part_name, part in walk_parts(message):
        if not is_attachment(part):
            continue
        content = part_bytes(part)
        attachments.append({
            "partName": part_name,
            "name": part.get_filename() or f"part-{part_name or 'root'}",
            "contentType": part.get_content_type(),
            "size": len(content),
            "content": content,
        })
    return attachments
