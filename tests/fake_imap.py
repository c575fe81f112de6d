"""
In-process stand-in for an imaplib session

PATTERN RECOGNITION: FakeIMAP answers the handful of imaplib calls the
connection manager makes (login, list, select, response, uid SEARCH/FETCH)
with byte shapes matching what imaplib returns from a real server, so the
whole sync pipeline can run without network access.
"""

import email
import imaplib
from dataclasses import dataclass, field
from email.message import EmailMessage
from typing import Dict, List, Optional, Sequence, Tuple

from mailvault.modules.models import Account


def make_account(account_id: str = "work", **overrides) -> Account:
    defaults = dict(
        account_id=account_id,
        email=f"{account_id}@example.com",
        imap_server="imap.example.com",
        imap_port=993,
        username=f"{account_id}@example.com",
        password="secret",
    )
    defaults.update(overrides)
    return Account(**defaults)


def make_message(
    message_id: Optional[str] = "<m1@example.com>",
    subject: str = "Hello",
    body: str = "Plain body",
    html: Optional[str] = None,
    attachments: Sequence[Tuple[str, bytes, str, str]] = (),
    sender: str = "Alice Example <alice@example.com>",
    to: str = "bob@example.com",
    date: str = "Mon, 06 Oct 2025 10:00:00 +0000",
) -> bytes:
    """Build raw RFC 5322 bytes; attachments are (filename, data, maintype, subtype)"""
    msg = EmailMessage()
    msg["From"] = sender
    msg["To"] = to
    msg["Subject"] = subject
    msg["Date"] = date
    if message_id:
        msg["Message-ID"] = message_id
    msg.set_content(body)
    if html is not None:
        msg.add_alternative(html, subtype="html")
    for filename, data, maintype, subtype in attachments:
        msg.add_attachment(data, maintype=maintype, subtype=subtype, filename=filename)
    return msg.as_bytes()


@dataclass
class FakeFolder:
    uid_validity: int = 1
    messages: Dict[int, bytes] = field(default_factory=dict)
    flags: Tuple[str, ...] = ("\\HasNoChildren",)

    def add(self, uid: int, raw: bytes) -> None:
        self.messages[uid] = raw

    @property
    def uid_next(self) -> int:
        return max(self.messages, default=0) + 1


class FakeIMAP:
    """
    Minimal imaplib.IMAP4 lookalike

    ``failures`` maps a command name (LOGIN, SELECT, SEARCH, FETCH) to a
    list of exceptions raised by the next calls of that command, one per call.
    """

    delimiter = "/"

    def __init__(self, folders: Optional[Dict[str, FakeFolder]] = None, reject_login: bool = False):
        self.folders: Dict[str, FakeFolder] = folders if folders is not None else {"INBOX": FakeFolder()}
        self.reject_login = reject_login
        self.failures: Dict[str, List[BaseException]] = {}
        self.refuse_search = False
        self.selected: Optional[str] = None
        self.login_count = 0
        self.logged_out = False
        self.commands: List[Tuple[str, ...]] = []

    def fail_next(self, command: str, *errors: BaseException) -> None:
        self.failures.setdefault(command, []).extend(errors)

    def _maybe_fail(self, command: str) -> None:
        pending = self.failures.get(command)
        if pending:
            raise pending.pop(0)

    # -- session -------------------------------------------------------

    def login(self, user: str, password: str):
        self._maybe_fail("LOGIN")
        if self.reject_login:
            raise imaplib.IMAP4.error("[AUTHENTICATIONFAILED] Invalid credentials (Failure)")
        self.login_count += 1
        self.logged_out = False
        return "OK", [b"LOGIN completed"]

    def logout(self):
        self.logged_out = True
        self.selected = None
        return "BYE", [b"Logging out"]

    def shutdown(self):
        self.logged_out = True

    def noop(self):
        return "OK", [b"NOOP completed"]

    # -- folders -------------------------------------------------------

    def list(self, directory: str = '""', pattern: str = "*"):
        lines = []
        for name, folder in self.folders.items():
            flags = " ".join(folder.flags)
            lines.append(f'({flags}) "{self.delimiter}" "{name}"'.encode())
        return "OK", lines

    def select(self, mailbox: str = "INBOX", readonly: bool = False):
        self._maybe_fail("SELECT")
        name = mailbox.strip('"').replace('\\"', '"').replace("\\\\", "\\")
        folder = self.folders.get(name)
        if folder is None or "\\Noselect" in folder.flags:
            return "NO", [b"[NONEXISTENT] Unknown Mailbox"]
        self.selected = name
        return "OK", [str(len(folder.messages)).encode()]

    def response(self, code: str):
        if self.selected is None:
            return code, [None]
        folder = self.folders[self.selected]
        if code == "UIDVALIDITY":
            return code, [str(folder.uid_validity).encode()]
        if code == "UIDNEXT":
            return code, [str(folder.uid_next).encode()]
        return code, [None]

    # -- UID commands --------------------------------------------------

    def uid(self, command: str, *args: str):
        command = command.upper()
        self.commands.append((command,) + args)
        self._maybe_fail(command)
        folder = self.folders[self.selected]
        if command == "SEARCH":
            return self._search(folder, args)
        if command == "FETCH":
            return self._fetch(folder, args[0], args[1])
        return "BAD", [b"Unsupported command"]

    def _search(self, folder: FakeFolder, criteria: Tuple[str, ...]):
        if self.refuse_search:
            return "NO", [b"SEARCH not allowed"]
        uids = sorted(folder.messages)
        if criteria[0] == "UID":
            low = int(criteria[1].split(":")[0])
            matched = [uid for uid in uids if uid >= low]
            # "n:*" always includes the highest UID, even below n
            if not matched and uids:
                matched = [uids[-1]]
            uids = matched
        return "OK", [" ".join(str(uid) for uid in uids).encode()]

    def _fetch(self, folder: FakeFolder, uid_set: str, items: str):
        ordered = sorted(folder.messages)
        if uid_set == "1:*":
            wanted = ordered
        else:
            requested = {int(token) for token in uid_set.split(",")}
            wanted = [uid for uid in ordered if uid in requested]

        data: List = []
        for seq, uid in enumerate(wanted, start=1):
            raw = folder.messages[uid]
            if "HEADER.FIELDS" in items:
                header = self._message_id_header(raw)
                data.append((
                    f"{seq} (UID {uid} BODY[HEADER.FIELDS (MESSAGE-ID)] {{{len(header)}}}".encode(),
                    header,
                ))
                data.append(b")")
            elif "BODY.PEEK[]" in items:
                data.append((
                    f"{seq} (UID {uid} FLAGS (\\Seen) RFC822.SIZE {len(raw)} BODY[] {{{len(raw)}}}".encode(),
                    raw,
                ))
                data.append(b")")
            else:
                data.append(f"{seq} (UID {uid} RFC822.SIZE {len(raw)})".encode())
        return "OK", data

    @staticmethod
    def _message_id_header(raw: bytes) -> bytes:
        value = email.message_from_bytes(raw).get("Message-ID") if raw else None
        if not value:
            return b"\r\n"
        return f"Message-ID: {value}\r\n\r\n".encode()
