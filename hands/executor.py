"""
╔══════════════════════════════════════════════════════════════╗
║      MAILBRIDGE — Hands: Mail Command Executor               ║
╠══════════════════════════════════════════════════════════════╣
║  Runs the nine mail commands the relay forwards:             ║
║    list_accounts · list_folders · list_unread_emails         ║
║    search_emails · read_email_raw · read_email               ║
║    send_email · read_email_attachments · download_attachment ║
║                                                              ║
║  Store calls block (imaplib/smtplib), so every handler runs  ║
║  in a worker thread. Failures raise; the tunnel turns them   ║
║  into {success: false, error, stack} responses. Search is    ║
║  the exception: it answers its own failures with a hint.     ║
╚══════════════════════════════════════════════════════════════╝
"""

import asyncio
import base64
import logging
import threading
import traceback
from datetime import datetime, timezone
from email.message import EmailMessage
from email.utils import formataddr, formatdate, make_msgid
from typing import Dict, List, Optional, Tuple

from hands.mailstore import MailStoreError, parse_folder_id, quote
from hands.mime import build_part_tree, find_text_body, list_attachments, parse_message

logger = logging.getLogger("mailbridge.hands")

SEARCH_HINT = "Try being more specific with your search query, or use list_unread_emails instead"

JUNK_KEYWORDS = {"$junk", "junk"}

_MONTHS = ("Jan", "Feb", "Mar", "Apr", "May", "Jun",
           "Jul", "Aug", "Sep", "Oct", "Nov", "Dec")


class FolderPolicy:
    """Decides which folders count as inboxes and which as spam.

    Matching is a case-insensitive substring test on the folder's name and
    path; a spam flag (e.g. \\Junk special-use) also marks a folder as spam.
    """

    def __init__(self, inbox_patterns=("inbox",), spam_patterns=("spam", "junk", "newsletter"),
                 spam_flags=("\\Junk",)):
        self.inbox_patterns = [p.lower() for p in inbox_patterns]
        self.spam_patterns = [p.lower() for p in spam_patterns]
        self.spam_flags = {f.lower() for f in spam_flags}

    @classmethod
    def from_config(cls, cfg: dict):
        cfg = cfg or {}
        defaults = cls()
        return cls(
            inbox_patterns=cfg.get("inbox_patterns", defaults.inbox_patterns),
            spam_patterns=cfg.get("spam_patterns", defaults.spam_patterns),
            spam_flags=cfg.get("spam_flags", defaults.spam_flags),
        )

    @staticmethod
    def _matches(folder, patterns) -> bool:
        name = (folder.get("name") or "").lower()
        path = (folder.get("path") or "").lower()
        return any(p in name or p in path for p in patterns)

    def is_inbox(self, folder: dict) -> bool:
        return self._matches(folder, self.inbox_patterns)

    def is_spam(self, folder: dict) -> bool:
        flags = {f.lower() for f in folder.get("flags", [])}
        return bool(flags & self.spam_flags) or self._matches(folder, self.spam_patterns)


class MessageIndex:
    """Session-scoped integer ids for (accountId, folderPath, uid) triples."""

    def __init__(self):
        self._lock = threading.Lock()
        self._by_key: Dict[Tuple[str, str, str], int] = {}
        self._by_id: Dict[int, Tuple[str, str, str]] = {}
        self._next_id = 1

    def id_for(self, account_id: str, path: str, uid: str) -> int:
        key = (account_id, path, str(uid))
        with self._lock:
            message_id = self._by_key.get(key)
            if message_id is None:
                message_id = self._next_id
                self._next_id += 1
                self._by_key[key] = message_id
                self._by_id[message_id] = key
            return message_id

    def lookup(self, message_id) -> Tuple[str, str, str]:
        try:
            number = int(message_id)
        except (TypeError, ValueError):
            raise MailStoreError(f"Invalid message id: {message_id!r}") from None
        with self._lock:
            key = self._by_id.get(number)
        if key is None or number != message_id:
            raise MailStoreError(f"Message not found: {message_id}")
        return key


def imap_date(value: datetime) -> str:
    """dd-Mon-yyyy, independent of the process locale."""
    return f"{value.day:02d}-{_MONTHS[value.month - 1]}-{value.year}"


def parse_iso_date(value: str) -> datetime:
    """ISO 8601 → aware datetime (naive input is taken as UTC; 'Z' accepted)."""
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        raise MailStoreError(f"Invalid date: {value}") from None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def build_search_criteria(payload: dict) -> List[str]:
    """search_emails filters → IMAP SEARCH keys (ANDed). No filters → ALL."""
    criteria = []
    for field, key in (("query", "TEXT"), ("from", "FROM"), ("to", "TO"), ("subject", "SUBJECT")):
        value = payload.get(field)
        if value:
            criteria += [key, quote(value)]
    if payload.get("unread") is not None:
        criteria.append("UNSEEN" if payload["unread"] else "SEEN")
    if payload.get("flagged") is not None:
        criteria.append("FLAGGED" if payload["flagged"] else "UNFLAGGED")
    return criteria or ["ALL"]


def _addresses(header) -> List[str]:
    if header is None:
        return []
    addresses = getattr(header, "addresses", None)
    if addresses is None:
        return [str(header)]
    return [str(a) for a in addresses]


def _header_date(headers) -> Optional[datetime]:
    header = headers.get("date")
    value = getattr(header, "datetime", None)
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value


def _newest_first(messages: List[dict]) -> List[dict]:
    oldest = datetime.min.replace(tzinfo=timezone.utc)
    return sorted(messages, key=lambda m: m.pop("_sort") or oldest, reverse=True)


class MailExecutor:
    """Command handlers over a mail store (see hands.mailstore.IMAPMailStore)."""

    def __init__(self, store, policy: FolderPolicy = None, search_timeout: float = 25.0):
        self.store = store
        self.policy = policy or FolderPolicy()
        self.search_timeout = search_timeout
        self.index = MessageIndex()
        self._handlers = {
            "list_accounts": self.list_accounts,
            "list_folders": self.list_folders,
            "list_unread_emails": self.list_unread_emails,
            "search_emails": self.search_emails,
            "read_email_raw": self.read_email_raw,
            "read_email": self.read_email,
            "send_email": self.send_email,
            "read_email_attachments": self.read_email_attachments,
            "download_attachment": self.download_attachment,
        }

    def handles(self, command_type) -> bool:
        return command_type in self._handlers

    async def execute(self, command_type: str, payload: dict) -> dict:
        payload = payload or {}
        if command_type == "search_emails":
            return await self._bounded_search(payload)
        return await asyncio.to_thread(self._handlers[command_type], payload)

    async def _bounded_search(self, payload):
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(self.search_emails, payload), self.search_timeout
            )
        except asyncio.TimeoutError:
            logger.warning(f"[!] Search timed out after {self.search_timeout:g}s")
            return {
                "success": False,
                "error": f"Search timed out after {self.search_timeout:g} seconds",
                "hint": SEARCH_HINT,
            }
        except Exception as e:
            logger.error(f"[!] Search error: {e}")
            return {
                "success": False,
                "error": str(e) or type(e).__name__,
                "hint": SEARCH_HINT,
                "stack": traceback.format_exc(),
            }

    # ── Helpers ─────────────────────────────────────

    def _accounts_in_scope(self, account_id=None):
        if account_id:
            return [self.store.account(account_id)]
        return self.store.accounts()

    def _explicit_folders(self, folder_id) -> List[Tuple[str, str]]:
        folder_ids = folder_id if isinstance(folder_id, list) else [folder_id]
        return [parse_folder_id(f) for f in folder_ids]

    def _summary(self, account_id, path, uid, flags, size, headers) -> dict:
        lowered = {f.lower() for f in flags}
        date = _header_date(headers)
        return {
            "id": self.index.id_for(account_id, path, uid),
            "date": date.isoformat() if date else None,
            "subject": str(headers.get("subject") or ""),
            "author": ", ".join(_addresses(headers.get("from"))),
            "recipients": _addresses(headers.get("to")),
            "ccList": _addresses(headers.get("cc")),
            "headerMessageId": str(headers.get("message-id") or "").strip("<>"),
            "read": "\\seen" in lowered,
            "flagged": "\\flagged" in lowered,
            "junk": bool(lowered & JUNK_KEYWORDS),
            "size": size,
            "folder": {"accountId": account_id, "path": path},
            "_sort": date,
        }

    def _summaries(self, account_id, path, uids) -> List[dict]:
        return [
            self._summary(account_id, path, r["uid"], r["flags"], r["size"], r["headers"])
            for r in self.store.fetch_summaries(account_id, path, uids)
        ]

    def _load(self, message_id):
        account_id, path, uid = self.index.lookup(message_id)
        raw, flags = self.store.fetch_message(account_id, path, uid)
        return account_id, path, uid, flags, raw

    # ── Accounts & folders ──────────────────────────

    def list_accounts(self, payload):
        accounts = self.store.accounts()
        return {
            "success": True,
            "accounts": [{
                "id": a.id,
                "name": a.name,
                "type": a.type,
                "identities": [{
                    "id": f"{a.id}-identity",
                    "email": a.email,
                    "name": a.display_name,
                }],
            } for a in accounts],
            "count": len(accounts),
        }

    def list_folders(self, payload):
        folders = []
        for account in self._accounts_in_scope(payload.get("accountId")):
            for folder in self.store.list_folders(account.id):
                folders.append({**folder, "accountId": account.id, "accountName": account.name})
        return {"success": True, "folders": folders, "count": len(folders)}

    # ── Listing & search ────────────────────────────

    def _policy_folders(self, account_id, include_spam) -> List[Tuple[str, str]]:
        selected = []
        for account in self._accounts_in_scope(account_id):
            for folder in self.store.list_folders(account.id):
                if not folder.get("selectable", True):
                    continue
                if self.policy.is_inbox(folder) or (include_spam and self.policy.is_spam(folder)):
                    selected.append((account.id, folder["path"]))
        return selected

    def list_unread_emails(self, payload):
        include_spam = bool(payload.get("includeSpam", False))
        limit = int(payload.get("limit", 50))
        after = parse_iso_date(payload["afterDate"]) if payload.get("afterDate") else None

        if payload.get("folderId"):
            folders = self._explicit_folders(payload["folderId"])
        else:
            folders = self._policy_folders(payload.get("accountId"), include_spam)

        criteria = ["UNSEEN"]
        if after is not None:
            # SINCE has day granularity; the exact cut happens below
            criteria += ["SINCE", imap_date(after)]

        messages = []
        for account_id, path in folders:
            uids = self.store.search(account_id, path, criteria)
            for summary in self._summaries(account_id, path, uids):
                if summary["junk"] and not include_spam:
                    continue
                if after is not None and (summary["_sort"] is None or summary["_sort"] <= after):
                    continue
                messages.append(summary)

        logger.info(f"[+] Found {len(messages)} unread message(s) in {len(folders)} folder(s)")
        messages = _newest_first(messages)[:limit]
        return {"success": True, "messages": messages, "count": len(messages)}

    def search_emails(self, payload):
        limit = int(payload.get("limit", 50))
        criteria = build_search_criteria(payload)

        if payload.get("folderId"):
            folders = self._explicit_folders(payload["folderId"])
        else:
            folders = [
                (account.id, folder["path"])
                for account in self._accounts_in_scope(payload.get("accountId"))
                for folder in self.store.list_folders(account.id)
                if folder.get("selectable", True)
            ]

        total = 0
        messages = []
        for account_id, path in folders:
            uids = self.store.search(account_id, path, criteria)
            total += len(uids)
            # Highest UIDs are the most recently delivered
            newest = sorted(uids, key=int)[-limit:] if limit > 0 else []
            messages.extend(self._summaries(account_id, path, newest))

        logger.info(f"[+] Search matched {total} message(s)")
        return {"success": True, "messages": _newest_first(messages)[:limit], "count": total}

    # ── Reading ─────────────────────────────────────

    def _open_message(self, payload):
        """Fetch, parse and (optionally) mark a message read. Returns (summary, message)."""
        account_id, path, uid, flags, raw = self._load(payload.get("messageId"))
        message = parse_message(raw)
        if payload.get("markAsRead") and "\\seen" not in {f.lower() for f in flags}:
            self.store.mark_seen(account_id, path, uid)
            flags = list(flags) + ["\\Seen"]
        summary = self._summary(account_id, path, uid, flags, len(raw), message)
        summary.pop("_sort")
        return summary, message

    def read_email_raw(self, payload):
        summary, message = self._open_message(payload)
        return {"success": True, "message": {**summary, "fullContent": build_part_tree(message)}}

    def read_email(self, payload):
        summary, message = self._open_message(payload)
        found = find_text_body(build_part_tree(message))
        body, is_html = found if found else ("", False)
        return {
            "success": True,
            "message": {
                "id": summary["id"],
                "date": summary["date"],
                "subject": summary["subject"],
                "from": summary["author"],
                "to": summary["recipients"],
                "cc": summary["ccList"],
                "body": body,
                "isHtml": is_html,
                "read": summary["read"],
                "flagged": summary["flagged"],
            },
        }

    # ── Sending ─────────────────────────────────────

    def send_email(self, payload):
        account_id = payload.get("accountId")
        if account_id:
            account = self.store.account(account_id)
        else:
            accounts = self.store.accounts()
            if not accounts:
                raise MailStoreError("No mail accounts configured")
            account = accounts[0]

        to = list(payload.get("to") or [])
        cc = list(payload.get("cc") or [])
        bcc = list(payload.get("bcc") or [])

        msg = EmailMessage()
        msg["From"] = formataddr((account.display_name, account.email))
        msg["To"] = ", ".join(to)
        if cc:
            msg["Cc"] = ", ".join(cc)
        msg["Subject"] = payload.get("subject", "")
        msg["Date"] = formatdate(localtime=True)
        msg["Message-ID"] = make_msgid(domain=account.email.rpartition("@")[2] or None)
        msg.set_content(payload.get("body", ""), subtype="html" if payload.get("isHtml") else "plain")

        # Bcc recipients go in the envelope only
        self.store.send(account.id, msg, to + cc + bcc)
        return {"success": True, "message": "Email sent successfully", "sentTo": to}

    # ── Attachments ─────────────────────────────────

    def read_email_attachments(self, payload):
        *_, raw = self._load(payload.get("messageId"))
        attachments = list_attachments(parse_message(raw))
        if not attachments:
            return {"success": True, "message": "No attachments found", "attachments": []}

        data = [{
            "filename": a["name"],
            "data": base64.b64encode(a["content"]).decode("ascii"),
            "contentType": a["contentType"],
            "size": a["size"],
        } for a in attachments]
        return {"success": True, "attachments": data, "count": len(data)}

    def download_attachment(self, payload):
        part_name = payload.get("partName")
        *_, raw = self._load(payload.get("messageId"))
        for attachment in list_attachments(parse_message(raw)):
            if attachment["partName"] == part_name or attachment["name"] == part_name:
                return {
                    "success": True,
                    "filename": attachment["name"],
                    "data": base64.b64encode(attachment["content"]).decode("ascii"),
                    "contentType": attachment["contentType"],
                    "size": attachment["size"],
                }
        return {"success": False, "error": "Attachment not found"}
