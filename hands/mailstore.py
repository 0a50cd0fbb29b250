"""
╔══════════════════════════════════════════════════════════════╗
║      MAILBRIDGE — Hands: IMAP/SMTP Mail Store                ║
╠══════════════════════════════════════════════════════════════╣
║  Blocking mailbox primitives used by the MailExecutor.       ║
║  One IMAP session per call (login → work → logout), so a     ║
║  dropped server connection never poisons later commands.     ║
║                                                              ║
║  Folder ids:  "<accountId>://<imap path>"                    ║
╚══════════════════════════════════════════════════════════════╝
"""

import imaplib
import logging
import os
import re
import smtplib
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from hands.mime import parse_headers

logger = logging.getLogger("mailbridge.hands")

SUMMARY_FIELDS = "(UID FLAGS RFC822.SIZE BODY.PEEK[HEADER.FIELDS (FROM TO CC SUBJECT DATE MESSAGE-ID)])"
FETCH_BATCH = 200

_LIST_RE = re.compile(r'\((?P<flags>[^)]*)\)\s+(?P<delim>"(?:[^"\\]|\\.)*"|NIL)\s+(?P<name>.+)$')
_UID_RE = re.compile(r"\bUID (\d+)")
_FLAGS_RE = re.compile(r"\bFLAGS \(([^)]*)\)")
_SIZE_RE = re.compile(r"\bRFC822\.SIZE (\d+)")

SPECIAL_USE = {"\\junk", "\\sent", "\\trash", "\\drafts", "\\archive", "\\all", "\\flagged"}


class MailStoreError(Exception):
    """A mailbox operation failed or referenced something that does not exist."""


@dataclass
class MailAccount:
    id: str
    email: str
    imap_host: str
    username: str = ""
    password: str = field(default="", repr=False)
    name: str = ""
    display_name: str = ""
    type: str = "imap"
    imap_port: int = 993
    imap_ssl: bool = True
    smtp_host: Optional[str] = None
    smtp_port: int = 587
    smtp_ssl: bool = False

    @classmethod
    def from_config(cls, cfg: dict):
        """Build an account from a worker.accounts entry; password may come from `password_env`."""
        password = cfg.get("password") or ""
        if not password and cfg.get("password_env"):
            password = os.environ.get(cfg["password_env"], "")
        return cls(
            id=str(cfg["id"]),
            email=cfg["email"],
            imap_host=cfg["imap_host"],
            username=cfg.get("username") or cfg["email"],
            password=password,
            name=cfg.get("name") or cfg["email"],
            display_name=cfg.get("display_name", ""),
            imap_port=int(cfg.get("imap_port", 993)),
            imap_ssl=bool(cfg.get("imap_ssl", True)),
            smtp_host=cfg.get("smtp_host"),
            smtp_port=int(cfg.get("smtp_port", 587)),
            smtp_ssl=bool(cfg.get("smtp_ssl", False)),
        )


def quote(value: str) -> str:
    """IMAP quoted string."""
    return '"' + value.replace("\\", "\\\\").replace('"', '\\"') + '"'


def _unquote(value: str) -> str:
    value = value.strip()
    if len(value) >= 2 and value[0] == '"' and value[-1] == '"':
        return value[1:-1].replace('\\"', '"').replace("\\\\", "\\")
    return value


def folder_id(account_id: str, path: str) -> str:
    return f"{account_id}://{path}"


def parse_folder_id(value: str) -> Tuple[str, str]:
    account_id, sep, path = value.partition("://")
    if not sep or not account_id or not path:
        raise MailStoreError(f"Invalid folder id: {value}")
    return account_id, path


def parse_list_line(account_id: str, line) -> Optional[dict]:
    """One LIST response line → folder dict, or None if it can't be parsed."""
    if isinstance(line, tuple):
        # Folder name sent as a literal
        line = line[0] + quote(line[1].decode("utf-8", errors="replace")).encode()
    if isinstance(line, bytes):
        line = line.decode("utf-8", errors="replace")
    match = _LIST_RE.match(line.strip())
    if not match:
        return None

    flags = match.group("flags").split()
    lowered = [f.lower() for f in flags]
    delim = match.group("delim")
    delimiter = None if delim == "NIL" else _unquote(delim)
    path = _unquote(match.group("name"))
    name = path.rsplit(delimiter, 1)[-1] if delimiter else path

    return {
        "id": folder_id(account_id, path),
        "accountId": account_id,
        "name": name,
        "path": path,
        "delimiter": delimiter,
        "flags": flags,
        "specialUse": [f.lstrip("\\") for f in lowered if f in SPECIAL_USE],
        "selectable": "\\noselect" not in lowered and "\\nonexistent" not in lowered,
    }


def parse_fetch_response(data) -> List[dict]:
    """Split a UID FETCH response into {uid, flags, size, raw} records.

    imaplib returns tuples (metadata, literal) and, between them, bytes
    fragments that can carry trailing items such as FLAGS.
    """
    records = []
    items = list(data or [])
    for index, item in enumerate(items):
        if not isinstance(item, tuple):
            continue
        meta = item[0].decode("utf-8", errors="replace")
        following = items[index + 1] if index + 1 < len(items) else None
        if isinstance(following, bytes):
            meta += " " + following.decode("utf-8", errors="replace")

        uid = _UID_RE.search(meta)
        if not uid:
            continue
        flags = _FLAGS_RE.search(meta)
        size = _SIZE_RE.search(meta)
        records.append({
            "uid": uid.group(1),
            "flags": flags.group(1).split() if flags else [],
            "size": int(size.group(1)) if size else None,
            "raw": item[1],
        })
    return records


class IMAPMailStore:
    """Mailbox access for the configured accounts."""

    def __init__(self, accounts: List[MailAccount], timeout: float = 30):
        self._accounts: Dict[str, MailAccount] = {a.id: a for a in accounts}
        self.timeout = timeout

    # ── Accounts ────────────────────────────────────

    def accounts(self) -> List[MailAccount]:
        return list(self._accounts.values())

    def account(self, account_id: str) -> MailAccount:
        try:
            return self._accounts[account_id]
        except KeyError:
            raise MailStoreError(f"Account not found: {account_id}") from None

    @contextmanager
    def _session(self, account: MailAccount):
        cls = imaplib.IMAP4_SSL if account.imap_ssl else imaplib.IMAP4
        try:
            conn = cls(account.imap_host, account.imap_port, timeout=self.timeout)
            conn.login(account.username, account.password)
        except (imaplib.IMAP4.error, OSError) as e:
            raise MailStoreError(f"IMAP login to {account.imap_host} failed: {e}") from e
        try:
            yield conn
        finally:
            try:
                conn.logout()
            except (imaplib.IMAP4.error, OSError) as e:
                logger.debug(f"IMAP logout from {account.imap_host}: {e}")

    def _select(self, conn, path: str, readonly=True):
        typ, data = conn.select(quote(path), readonly=readonly)
        if typ != "OK":
            raise MailStoreError(f"Cannot open folder {path}: {data}")

    # ── Folders ─────────────────────────────────────

    def list_folders(self, account_id: str) -> List[dict]:
        account = self.account(account_id)
        with self._session(account) as conn:
            typ, data = conn.list()
        if typ != "OK":
            raise MailStoreError(f"LIST failed for {account_id}: {data}")

        folders = []
        for line in data or []:
            if line is None:
                continue
            folder = parse_list_line(account_id, line)
            if folder is None:
                logger.debug(f"Unparsed LIST line: {line!r}")
                continue
            folders.append(folder)
        return folders

    # ── Messages ────────────────────────────────────

    def search(self, account_id: str, path: str, criteria: List[str]) -> List[str]:
        account = self.account(account_id)
        with self._session(account) as conn:
            if any(not c.isascii() for c in criteria):
                try:
                    conn.enable("UTF8=ACCEPT")
                except imaplib.IMAP4.error as e:
                    raise MailStoreError(f"Server cannot search non-ASCII text: {e}") from e
            self._select(conn, path)
            typ, data = conn.uid("SEARCH", None, *criteria)
        if typ != "OK":
            raise MailStoreError(f"SEARCH failed in {path}: {data}")
        return data[0].decode().split() if data and data[0] else []

    def fetch_summaries(self, account_id: str, path: str, uids: List[str]) -> List[dict]:
        """Header-only records: {uid, flags, size, headers}."""
        if not uids:
            return []
        account = self.account(account_id)
        records = []
        with self._session(account) as conn:
            self._select(conn, path)
            for start in range(0, len(uids), FETCH_BATCH):
                batch = ",".join(uids[start:start + FETCH_BATCH])
                typ, data = conn.uid("FETCH", batch, SUMMARY_FIELDS)
                if typ != "OK":
                    raise MailStoreError(f"FETCH failed in {path}: {data}")
                records.extend(parse_fetch_response(data))

        for record in records:
            record["headers"] = parse_headers(record.pop("raw") or b"")
        return records

    def fetch_message(self, account_id: str, path: str, uid: str) -> Tuple[bytes, List[str]]:
        """Full RFC 822 bytes and flags. BODY.PEEK leaves \\Seen untouched."""
        account = self.account(account_id)
        with self._session(account) as conn:
            self._select(conn, path)
            typ, data = conn.uid("FETCH", uid, "(UID FLAGS BODY.PEEK[])")
        records = parse_fetch_response(data) if typ == "OK" else []
        if not records:
            raise MailStoreError(f"Message {uid} not found in {path}")
        return records[0]["raw"], records[0]["flags"]

    def mark_seen(self, account_id: str, path: str, uid: str):
        account = self.account(account_id)
        with self._session(account) as conn:
            self._select(conn, path, readonly=False)
            typ, data = conn.uid("STORE", uid, "+FLAGS", "(\\Seen)")
        if typ != "OK":
            raise MailStoreError(f"Cannot mark {uid} as read in {path}: {data}")

    # ── Sending ─────────────────────────────────────

    def send(self, account_id: str, message, recipients: List[str]):
        account = self.account(account_id)
        if not account.smtp_host:
            raise MailStoreError(f"Account {account_id} has no smtp_host configured")
        try:
            if account.smtp_ssl:
                server = smtplib.SMTP_SSL(account.smtp_host, account.smtp_port, timeout=self.timeout)
            else:
                server = smtplib.SMTP(account.smtp_host, account.smtp_port, timeout=self.timeout)
            with server:
                if not account.smtp_ssl:
                    server.starttls()
                server.login(account.username, account.password)
                server.send_message(message, from_addr=account.email, to_addrs=recipients)
        except (smtplib.SMTPException, OSError) as e:
            raise MailStoreError(f"SMTP send via {account.smtp_host} failed: {e}") from e
        logger.info(f"[+] Sent '{message['Subject']}' to {len(recipients)} recipient(s)")
