"""
╔══════════════════════════════════════════════════════════╗
║      MAILBRIDGE — Front-end: Result Post-processing      ║
╠══════════════════════════════════════════════════════════╣
║  Runs on the bridge host after a successful payload:     ║
║    - read_email             HTML body → markdown         ║
║    - read_email_attachments base64 files → downloadPath/ ║
║    - download_attachment    base64 file → downloadPath   ║
║  Never part of the correlation protocol.                 ║
╚══════════════════════════════════════════════════════════╝
"""

import asyncio
import base64
import logging
import os

import html2text

logger = logging.getLogger("mailbridge.frontend")


def html_to_markdown(html: str) -> str:
    """Convert an HTML body to markdown (ATX headings, '*' bullets, no wrapping)."""
    converter = html2text.HTML2Text()
    converter.body_width = 0
    converter.ul_item_mark = "*"
    converter.ignore_images = False
    converter.ignore_links = False
    return converter.handle(html).strip()


def convert_email_body(result):
    """Rewrite result["message"]["body"] to markdown when the worker flagged it as HTML.

    Conversion failures leave the original HTML (and the isHtml flag) in place.
    """
    if not isinstance(result, dict) or not result.get("success"):
        return result
    message = result.get("message")
    if not isinstance(message, dict) or not message.get("isHtml"):
        return result
    body = message.get("body")
    if not isinstance(body, str):
        return result

    try:
        message["body"] = html_to_markdown(body)
        del message["isHtml"]
    except Exception as e:
        logger.error(f"[!] Markdown conversion error, keeping HTML: {e}")
    return result


def _write_bytes(path, data: bytes):
    os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
    with open(path, "wb") as f:
        f.write(data)


async def save_attachments(result, download_path: str):
    """Persist every {filename, data} attachment under `download_path`.

    Returns a replacement result describing the written files, or `result`
    unchanged when it carries no attachment list.
    """
    if not (isinstance(result, dict) and result.get("success")
            and isinstance(result.get("attachments"), list)):
        return result

    saved = []
    for attachment in result["attachments"]:
        if not isinstance(attachment, dict):
            continue
        filename = attachment.get("filename")
        data = attachment.get("data")
        if not isinstance(filename, str) or not isinstance(data, str):
            continue

        # Worker-supplied names must not escape the target directory
        safe_name = os.path.basename(filename.replace("\\", "/")) or "attachment"
        file_path = os.path.abspath(os.path.join(download_path, safe_name))
        content = base64.b64decode(data)
        await asyncio.to_thread(_write_bytes, file_path, content)
        logger.info(f"[+] Saved attachment {safe_name} ({len(content)} bytes)")

        saved.append({"filename": safe_name, "path": file_path, "size": len(content)})

    return {
        "success": True,
        "message": f"Downloaded {len(saved)} attachment(s) to {download_path}",
        "files": saved,
    }


async def save_attachment(result, download_path: str):
    """Persist a single base64 attachment payload at exactly `download_path`."""
    if not (isinstance(result, dict) and result.get("success")
            and isinstance(result.get("data"), str)):
        return result

    content = base64.b64decode(result["data"])
    filename = result["filename"] if isinstance(result.get("filename"), str) else "attachment"
    file_path = os.path.abspath(download_path)
    await asyncio.to_thread(_write_bytes, file_path, content)
    logger.info(f"[+] Saved attachment {filename} to {file_path} ({len(content)} bytes)")

    return {
        "success": True,
        "message": f"Attachment saved to {download_path}",
        "filename": filename,
        "path": file_path,
        "size": len(content),
    }
