"""
IMAP Connection Module
Owns the single IMAP session of an account and the commands sent over it

PATTERN RECOGNITION: This is an Adapter around Python's imaplib. The blocking
imaplib calls run on a worker thread through asyncio.to_thread, and an
asyncio.Lock keeps exactly one command in flight per session because IMAP
commands on one connection cannot be safely interleaved.

The session lifecycle is an explicit state machine:

    DISCONNECTED -> CONNECTING -> AUTHENTICATED -> (ERROR | CLOSED)

Every timeout or transport failure moves the session to ERROR and surfaces
as SyncConnectionError; only reconnect() brings it back.
"""

import asyncio
import email
import imaplib
import logging
import re
import threading
from enum import Enum
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple

from .exceptions import FolderError, DiscoveryError, SyncConnectionError
from .models import Account, FetchedMessage, FolderStatus
from .retry_policy import ReconnectPolicy
from ..utils.sanitization import sanitize_for_logging, redact_email
from ..utils.security_validators import create_secure_ssl_context


logger = logging.getLogger(__name__)

UID_PATTERN = re.compile(rb"UID (\d+)")
SIZE_PATTERN = re.compile(rb"RFC822\.SIZE (\d+)")
FLAGS_PATTERN = re.compile(rb"FLAGS \(([^)]*)\)")
FETCH_START_PATTERN = re.compile(rb"^\d+ \(")

HEADER_FETCH_ITEMS = "(UID BODY.PEEK[HEADER.FIELDS (MESSAGE-ID)])"
SIZE_FETCH_ITEMS = "(UID RFC822.SIZE)"
BODY_FETCH_ITEMS = "(UID FLAGS RFC822.SIZE BODY.PEEK[])"


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    AUTHENTICATED = "authenticated"
    ERROR = "error"
    CLOSED = "closed"


_ALLOWED_TRANSITIONS = {
    ConnectionState.DISCONNECTED: {ConnectionState.CONNECTING, ConnectionState.CLOSED},
    ConnectionState.CONNECTING: {
        ConnectionState.AUTHENTICATED, ConnectionState.ERROR, ConnectionState.CLOSED
    },
    ConnectionState.AUTHENTICATED: {ConnectionState.ERROR, ConnectionState.CLOSED},
    ConnectionState.ERROR: {ConnectionState.CONNECTING, ConnectionState.CLOSED},
    ConnectionState.CLOSED: {ConnectionState.CONNECTING, ConnectionState.CLOSED},
}


def quote_mailbox(name: str) -> str:
    """Quote a mailbox name for use as an IMAP astring."""
    return '"' + name.replace("\\", "\\\\").replace('"', '\\"') + '"'


def iter_fetch_records(data: List[Any]) -> Iterator[Tuple[bytes, Optional[bytes]]]:
    """
    Group an imaplib FETCH response into (metadata, literal) pairs

    imaplib returns literals as ``(b'1 (UID 7 BODY[] {42}', b'...')`` tuples
    followed by a bytes item carrying whatever came after the literal
    (``b')'`` or ``b' FLAGS (\\Seen))'``). Responses without a literal
    arrive as plain bytes such as ``b'1 (UID 7 RFC822.SIZE 42)'``.
    """
    meta: Optional[bytes] = None
    payload: Optional[bytes] = None

    for item in data:
        if isinstance(item, tuple) and len(item) >= 2:
            if meta is not None:
                yield meta, payload
            meta, payload = item[0], item[1]
        elif isinstance(item, bytes):
            if FETCH_START_PATTERN.match(item):
                if meta is not None:
                    yield meta, payload
                    meta, payload = None, None
                yield item, None
            elif meta is not None:
                meta += item

    if meta is not None:
        yield meta, payload


def _extract_int(pattern: "re.Pattern[bytes]", meta: bytes) -> Optional[int]:
    match = pattern.search(meta)
    return int(match.group(1)) if match else None


def _extract_flags(meta: bytes) -> List[str]:
    match = FLAGS_PATTERN.search(meta)
    if not match:
        return []
    return [flag.decode("ascii", errors="replace") for flag in match.group(1).split()]


class ConnectionManager:
    """
    One IMAP session per account, with connect/reconnect/disconnect

    MAINTENANCE WISDOM: Discovery and fetching never touch imaplib directly.
    They call the coroutine methods here, which makes every suspension point
    (and every timeout) visible in one file.
    """

    def __init__(
        self,
        account: Account,
        storage: Any = None,
        connect_timeout: float = 30.0,
        command_timeout: float = 120.0,
        reconnect_policy: Optional[ReconnectPolicy] = None,
        session_factory: Optional[Callable[[Account], Any]] = None,
        sleep: Optional[Callable[[float], Any]] = None,
    ):
        """
        Args:
            account: Account whose mailbox this session talks to
            storage: Storage handle released together with the session
            connect_timeout: Seconds allowed for connect + login
            command_timeout: Seconds allowed for any other single command
            reconnect_policy: Attempts and delays used by reconnect()
            session_factory: Builds an unauthenticated imaplib-compatible
                session; defaults to IMAP4_SSL / IMAP4 + STARTTLS
            sleep: Awaitable sleep used between reconnect attempts
        """
        self.account = account
        self.storage = storage
        self.connect_timeout = connect_timeout
        self.command_timeout = command_timeout
        self.reconnect_policy = reconnect_policy or ReconnectPolicy()
        self._session_factory = session_factory
        self._sleep = sleep
        self.session: Any = None
        self._pending_session: Any = None
        self._state = ConnectionState.DISCONNECTED
        self._lock = asyncio.Lock()
        self.logger = logging.getLogger(f"ConnectionManager.{account.account_id}")

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_authenticated(self) -> bool:
        return self._state is ConnectionState.AUTHENTICATED and self.session is not None

    def _transition(self, new_state: ConnectionState) -> None:
        if new_state not in _ALLOWED_TRANSITIONS[self._state]:
            raise RuntimeError(
                f"Invalid connection transition {self._state.value} -> {new_state.value}"
            )
        self.logger.debug(f"Connection state {self._state.value} -> {new_state.value}")
        self._state = new_state

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def connect(self) -> None:
        """
        Open and authenticate a new session

        Raises:
            SyncConnectionError: On timeout, transport failure, or rejected
                credentials (the latter with ``retryable=False``)
        """
        if self.is_authenticated:
            return

        self._transition(ConnectionState.CONNECTING)
        self.logger.info(
            f"Connecting to {self.account.imap_server}:{self.account.imap_port} "
            f"(TLS={self.account.use_tls})"
        )

        abandoned = threading.Event()
        try:
            session = await asyncio.wait_for(
                asyncio.to_thread(self._open_session, abandoned),
                timeout=self.connect_timeout,
            )
        except asyncio.TimeoutError as e:
            abandoned.set()
            self._transition(ConnectionState.ERROR)
            await self._abandon_pending_session()
            raise SyncConnectionError(
                f"Timed out connecting to {self.account.imap_server} "
                f"after {self.connect_timeout}s"
            ) from e
        except imaplib.IMAP4.abort as e:
            self._transition(ConnectionState.ERROR)
            raise SyncConnectionError(f"Connection aborted: {sanitize_for_logging(str(e))}") from e
        except imaplib.IMAP4.error as e:
            self._transition(ConnectionState.ERROR)
            self.logger.error(f"IMAP login failed: {sanitize_for_logging(str(e))}")
            tip = self._get_auth_tip(str(e))
            if tip:
                self.logger.warning(tip)
            raise SyncConnectionError(
                f"Authentication failed: {sanitize_for_logging(str(e))}",
                retryable=False,
            ) from e
        except OSError as e:
            self._transition(ConnectionState.ERROR)
            raise SyncConnectionError(
                f"Connection to {self.account.imap_server}:{self.account.imap_port} failed: {e}"
            ) from e
        finally:
            self._pending_session = None

        self.session = session
        self._transition(ConnectionState.AUTHENTICATED)
        self.logger.info(f"Successfully connected to {redact_email(self.account.email)}")

    def _open_session(self, abandoned: Optional[threading.Event] = None) -> Any:
        """
        Blocking: create the session and log in (runs on a worker thread)

        When ``abandoned`` is set by the time login returns, connect() has
        already timed out; the session is shut down here and None returned.
        """
        if self._session_factory is not None:
            session = self._session_factory(self.account)
        elif self.account.use_tls:
            context = create_secure_ssl_context(self.account.verify_ssl)
            session = imaplib.IMAP4_SSL(
                self.account.imap_server,
                self.account.imap_port,
                ssl_context=context,
                timeout=self.connect_timeout,
            )
        else:
            context = create_secure_ssl_context(self.account.verify_ssl)
            session = imaplib.IMAP4(
                self.account.imap_server,
                self.account.imap_port,
                timeout=self.connect_timeout,
            )
            session.starttls(ssl_context=context)

        self._pending_session = session
        session.login(self.account.username, self.account.password)
        if abandoned is not None and abandoned.is_set():
            if self._pending_session is session:
                self._pending_session = None
            self._shutdown_quietly(session)
            return None
        return session

    def _shutdown_quietly(self, session: Any) -> None:
        try:
            session.shutdown()
        except (OSError, imaplib.IMAP4.error) as e:
            self.logger.debug(f"Could not shut down abandoned session: {e}")

    async def _abandon_pending_session(self) -> None:
        pending, self._pending_session = self._pending_session, None
        if pending is not None:
            await asyncio.to_thread(self._shutdown_quietly, pending)

    async def reconnect(self) -> None:
        """
        Throw the current session away and build a new one

        Each attempt waits the policy delay first, then connects from
        scratch.

        Raises:
            SyncConnectionError: When every attempt failed (fatal for the
                current cycle) or credentials were rejected
        """
        self.logger.info("Attempting to reconnect to IMAP server...")

        async def attempt() -> None:
            await self._close_session()
            await self.connect()

        await self.reconnect_policy.run(
            attempt,
            description=f"Reconnect to {self.account.imap_server}",
            sleep=self._sleep,
        )
        self.logger.info("Reconnected to IMAP server")

    async def disconnect(self) -> None:
        """
        Close the session and release the storage handle

        Safe to call from any state and more than once.
        """
        await self._close_session()

        storage, self.storage = self.storage, None
        if storage is not None:
            try:
                await asyncio.to_thread(storage.close)
            except Exception as e:
                self.logger.warning(f"Error releasing storage handle: {e}")

    async def _close_session(self) -> None:
        session, self.session = self.session, None

        if session is not None:
            try:
                await asyncio.wait_for(asyncio.to_thread(session.logout), timeout=10)
                self.logger.info("Disconnected from IMAP server")
            except (asyncio.TimeoutError, OSError, imaplib.IMAP4.error):
                self.logger.debug("Connection was already closed or logout failed")
                try:
                    session.shutdown()
                except (OSError, AttributeError, imaplib.IMAP4.error):
                    pass

        if self._state is not ConnectionState.CLOSED:
            self._transition(ConnectionState.CLOSED)

    def mark_broken(self) -> None:
        """Flag the session unusable until the next reconnect"""
        if self._state is ConnectionState.AUTHENTICATED:
            self._transition(ConnectionState.ERROR)

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    async def _execute(
        self,
        description: str,
        command: Callable[[Any], Any],
        timeout: Optional[float] = None,
    ) -> Any:
        """
        Run one blocking imaplib call against the live session

        Protocol-level refusals (imaplib.IMAP4.error other than abort) are
        passed through for the caller to classify.
        """
        async with self._lock:
            if not self.is_authenticated:
                raise SyncConnectionError(
                    f"Cannot {description}: session is {self._state.value}"
                )
            session = self.session
            limit = timeout or self.command_timeout

            try:
                return await asyncio.wait_for(asyncio.to_thread(command, session), limit)
            except asyncio.TimeoutError as e:
                self.mark_broken()
                raise SyncConnectionError(f"{description} timed out after {limit}s") from e
            except imaplib.IMAP4.abort as e:
                self.mark_broken()
                raise SyncConnectionError(
                    f"Connection lost during {description}: {sanitize_for_logging(str(e))}"
                ) from e
            except OSError as e:
                self.mark_broken()
                raise SyncConnectionError(f"Socket error during {description}: {e}") from e

    async def noop(self) -> None:
        """Check the session is alive"""
        await self._execute("noop", lambda s: s.noop(), timeout=self.connect_timeout)

    async def list_mailboxes(self) -> List[Any]:
        """Raw LIST response lines"""
        try:
            status, data = await self._execute("list folders", lambda s: s.list())
        except imaplib.IMAP4.error as e:
            raise FolderError(f"LIST failed: {sanitize_for_logging(str(e))}") from e

        if status != "OK":
            raise FolderError(f"LIST failed: {status}")
        return [item for item in data if item]

    async def select_folder(self, folder: str) -> FolderStatus:
        """
        Open a folder read-only and report its size and UID generation

        Raises:
            FolderError: If the server refuses the folder
        """
        def _select(session: Any) -> Tuple[str, Any, Any, Any]:
            status, data = session.select(quote_mailbox(folder), readonly=True)
            _, validity = session.response("UIDVALIDITY")
            _, uid_next = session.response("UIDNEXT")
            return status, data, validity, uid_next

        safe_folder = sanitize_for_logging(folder)
        try:
            status, data, validity, uid_next = await self._execute(
                f"select {safe_folder}", _select
            )
        except imaplib.IMAP4.error as e:
            raise FolderError(
                f"Could not select folder {safe_folder}: {sanitize_for_logging(str(e))}"
            ) from e

        if status != "OK":
            raise FolderError(f"Could not select folder {safe_folder}: {status}")

        self.logger.debug(f"Selected folder: {safe_folder}")
        return FolderStatus(
            name=folder,
            exists=self._first_int(data) or 0,
            uid_validity=self._first_int(validity),
            uid_next=self._first_int(uid_next),
        )

    async def uid_search(self, *criteria: str) -> List[int]:
        """
        UID SEARCH with the given criteria tokens

        Raises:
            DiscoveryError: If the server rejects the search
        """
        try:
            status, data = await self._execute(
                "search", lambda s: s.uid("SEARCH", *criteria)
            )
        except imaplib.IMAP4.error as e:
            raise DiscoveryError(f"SEARCH failed: {sanitize_for_logging(str(e))}") from e

        if status != "OK":
            raise DiscoveryError(f"SEARCH failed: {status}")

        uids = set()
        for chunk in data or []:
            if chunk:
                uids.update(int(token) for token in chunk.split() if token.isdigit())
        return sorted(uids)

    async def fetch_message_ids(
        self, uids: Optional[List[int]] = None
    ) -> List[Tuple[int, Optional[str]]]:
        """
        Fetch only the Message-ID header of the given UIDs (default: all)

        Returns:
            (uid, raw Message-ID header or None) in server order
        """
        if uids is not None and not uids:
            return []
        uid_set = ",".join(str(uid) for uid in uids) if uids else "1:*"
        try:
            status, data = await self._execute(
                "fetch headers", lambda s: s.uid("FETCH", uid_set, HEADER_FETCH_ITEMS)
            )
        except imaplib.IMAP4.error as e:
            raise FolderError(f"Header fetch failed: {sanitize_for_logging(str(e))}") from e

        if status != "OK":
            raise FolderError(f"Header fetch failed: {status}")

        results = []
        for meta, payload in iter_fetch_records(data or []):
            uid = _extract_int(UID_PATTERN, meta)
            if uid is None:
                continue
            header = email.message_from_bytes(payload or b"").get("Message-ID")
            results.append((uid, str(header).strip() if header else None))
        return results

    async def fetch_sizes(self, uids: List[int]) -> Dict[int, int]:
        """RFC822.SIZE for each UID (cheap pre-check before downloading)"""
        if not uids:
            return {}
        uid_set = ",".join(str(uid) for uid in uids)
        try:
            status, data = await self._execute(
                "fetch sizes", lambda s: s.uid("FETCH", uid_set, SIZE_FETCH_ITEMS)
            )
        except imaplib.IMAP4.error as e:
            raise FolderError(f"Size fetch failed: {sanitize_for_logging(str(e))}") from e

        if status != "OK":
            raise FolderError(f"Size fetch failed: {status}")

        sizes = {}
        for meta, _ in iter_fetch_records(data or []):
            uid = _extract_int(UID_PATTERN, meta)
            size = _extract_int(SIZE_PATTERN, meta)
            if uid is not None and size is not None:
                sizes[uid] = size
        return sizes

    async def fetch_messages(self, uids: List[int]) -> List[FetchedMessage]:
        """
        Download full messages (without setting \\Seen)

        UIDs the server no longer has are silently absent from the result.
        """
        if not uids:
            return []
        uid_set = ",".join(str(uid) for uid in uids)
        try:
            status, data = await self._execute(
                "fetch messages", lambda s: s.uid("FETCH", uid_set, BODY_FETCH_ITEMS)
            )
        except imaplib.IMAP4.error as e:
            raise FolderError(f"Message fetch failed: {sanitize_for_logging(str(e))}") from e

        if status != "OK":
            raise FolderError(f"Message fetch failed: {status}")

        messages = []
        for meta, payload in iter_fetch_records(data or []):
            uid = _extract_int(UID_PATTERN, meta)
            if uid is None or not isinstance(payload, bytes):
                continue
            messages.append(FetchedMessage(
                uid=uid,
                raw=payload,
                flags=_extract_flags(meta),
                size=_extract_int(SIZE_PATTERN, meta) or len(payload),
            ))
        return messages

    @staticmethod
    def _first_int(data: Any) -> Optional[int]:
        if not data:
            return None
        value = data[0] if isinstance(data, (list, tuple)) else data
        if isinstance(value, bytes):
            value = value.decode("ascii", errors="ignore")
        try:
            return int(str(value).strip())
        except (TypeError, ValueError):
            return None

    def _get_auth_tip(self, error_msg: str) -> Optional[str]:
        """
        Actionable hint for common provider authentication failures

        Major providers require app-specific passwords for IMAP access.
        """
        msg_lower = error_msg.lower()
        server_lower = self.account.imap_server.lower()

        auth_keywords = [
            "authentication failed", "login failed", "invalid credentials",
            "logon failure", "authenticate"
        ]
        if not any(k in msg_lower for k in auth_keywords):
            return None

        if "outlook" in server_lower or "office365" in server_lower:
            return "Outlook/Hotmail accounts need an App Password or OAuth for IMAP."
        if "gmail" in server_lower:
            return "Gmail requires 2-Step Verification and an App Password for IMAP."
        if "yahoo" in server_lower:
            return "Yahoo Mail requires an App Password from the account security settings."
        return "Check the username and password. Accounts with 2FA usually need an App Password."
