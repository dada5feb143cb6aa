"""Mailbox session: one authenticated IMAP connection for one account.

Wraps stdlib ``imaplib``; every blocking call runs in a worker thread via
``asyncio.to_thread()`` so the event loop never stalls on network I/O.
The handle is not safe for concurrent use and must only be driven by
the scheduler that created it.
"""

from __future__ import annotations

import asyncio
import imaplib
import time
from collections.abc import Iterable
from datetime import UTC, datetime
from typing import Any

import structlog

from .config import AccountConfig, SyncPolicyConfig
from .exceptions import FolderError, ProtocolError, TransportError
from .models import FetchCriteria, RawRecord

logger = structlog.get_logger()

# PEEK keeps the server from setting \Seen on the messages we read.
FETCH_ITEMS = "(UID FLAGS INTERNALDATE BODY.PEEK[HEADER] BODY.PEEK[TEXT])"

_AUTHENTICATED_STATES = ("AUTH", "SELECTED")


async def connect(account: AccountConfig, policy: SyncPolicyConfig) -> MailboxSession:
    """Open and authenticate a session for *account*.

    Raises :class:`TransportError` if the server is unreachable or
    rejects the credentials.
    """
    session = MailboxSession(account, timeout=policy.imap_timeout_seconds)
    await session.open()
    return session


class MailboxSession:
    """Async-friendly IMAP session with folder-scoped search and fetch."""

    def __init__(self, account: AccountConfig, *, timeout: float | None = None) -> None:
        self._account = account
        self._timeout = timeout
        self._conn: imaplib.IMAP4_SSL | imaplib.IMAP4 | None = None
        self._folder: str | None = None

    @property
    def account_id(self) -> str:
        return self._account.id

    @property
    def current_folder(self) -> str | None:
        return self._folder

    @property
    def is_authenticated(self) -> bool:
        return self._conn is not None and self._conn.state in _AUTHENTICATED_STATES

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def open(self) -> None:
        """Connect and log in."""
        try:
            await asyncio.to_thread(self._open_sync)
        except (OSError, imaplib.IMAP4.error) as exc:
            await self.close()
            raise TransportError(f"cannot open session for {self._account.id}: {exc}") from exc
        logger.info(
            "imap_connected",
            host=self._account.host,
            port=self._account.port,
            tls=self._account.use_tls,
        )

    def _open_sync(self) -> None:
        if self._account.use_tls:
            self._conn = imaplib.IMAP4_SSL(
                self._account.host, self._account.port, timeout=self._timeout
            )
        else:
            self._conn = imaplib.IMAP4(self._account.host, self._account.port, timeout=self._timeout)
        self._conn.login(self._account.username, self._account.password.get_secret_value())

    async def close(self) -> None:
        """Log out and release the socket.  Safe to call on a half-open session."""
        if self._conn is None:
            return
        conn = self._conn
        self._conn = None
        self._folder = None
        await asyncio.to_thread(_teardown, conn)
        logger.info("imap_disconnected")

    async def is_alive(self) -> bool:
        """Check connection liveness with a NOOP command."""
        if not self.is_authenticated:
            return False
        assert self._conn is not None
        try:
            status, _ = await asyncio.to_thread(self._conn.noop)
        except (imaplib.IMAP4.error, OSError):
            return False
        return status == "OK"

    # ------------------------------------------------------------------
    # Folder operations
    # ------------------------------------------------------------------

    async def select_folder(self, name: str) -> None:
        """Select *name* read-only.

        Raises :class:`FolderError` if the server refuses the folder and
        :class:`TransportError` if the connection is gone.
        """
        await asyncio.to_thread(self._select_sync, name)
        self._folder = name

    async def search(self, criteria: FetchCriteria) -> list[RawRecord]:
        """Search the selected folder and fetch every match, in UID order."""
        uids = await self.search_uids(criteria)
        return await self.fetch(uids)

    async def search_uids(self, criteria: FetchCriteria) -> list[int]:
        """Return the UIDs in the selected folder matching *criteria*, ascending."""
        return await asyncio.to_thread(self._search_sync, criteria.to_imap())

    async def fetch(self, uids: Iterable[int]) -> list[RawRecord]:
        """Fetch header, text, flags and internal date for each UID."""
        return await asyncio.to_thread(self._fetch_sync, list(uids))

    # ------------------------------------------------------------------
    # Synchronous helpers (run in thread)
    # ------------------------------------------------------------------

    def _require_conn(self) -> imaplib.IMAP4:
        if not self.is_authenticated:
            raise TransportError(f"session for {self._account.id} is not authenticated")
        assert self._conn is not None
        return self._conn

    def _select_sync(self, name: str) -> None:
        conn = self._require_conn()
        try:
            status, data = conn.select(_quote_mailbox(name), readonly=True)
        except imaplib.IMAP4.abort as exc:
            raise TransportError(str(exc)) from exc
        except OSError as exc:
            raise TransportError(str(exc)) from exc
        except imaplib.IMAP4.error as exc:
            raise FolderError(name, str(exc)) from exc
        if status != "OK":
            raise FolderError(name, _describe(data))

    def _search_sync(self, criteria: str) -> list[int]:
        conn = self._require_conn()
        folder = self._folder or "?"
        try:
            status, data = conn.uid("SEARCH", None, criteria)
        except imaplib.IMAP4.abort as exc:
            raise TransportError(str(exc)) from exc
        except OSError as exc:
            raise TransportError(str(exc)) from exc
        except imaplib.IMAP4.error as exc:
            raise FolderError(folder, f"search {criteria!r} failed: {exc}") from exc
        if status != "OK":
            raise FolderError(folder, f"search {criteria!r} rejected: {_describe(data)}")
        if not data or not data[0]:
            return []
        return sorted(int(uid) for uid in data[0].split())

    def _fetch_sync(self, uids: list[int]) -> list[RawRecord]:
        conn = self._require_conn()
        records: list[RawRecord] = []
        for uid in uids:
            try:
                status, data = conn.uid("FETCH", str(uid), FETCH_ITEMS)
            except imaplib.IMAP4.abort as exc:
                raise TransportError(str(exc)) from exc
            except OSError as exc:
                raise TransportError(str(exc)) from exc
            except imaplib.IMAP4.error as exc:
                logger.warning("imap_fetch_failed", uid=uid, folder=self._folder, error=str(exc))
                records.append(RawRecord(uid=uid, header=None, text=None))
                continue

            if status != "OK" or not data or data[0] is None:
                logger.warning("imap_fetch_empty", uid=uid, folder=self._folder, status=status)
                records.append(RawRecord(uid=uid, header=None, text=None))
                continue

            try:
                records.append(parse_fetch_response(uid, data))
            except ProtocolError as exc:
                logger.warning("imap_fetch_malformed", uid=uid, folder=self._folder, error=str(exc))
                records.append(RawRecord(uid=uid, header=None, text=None))

        logger.debug("imap_fetch_complete", folder=self._folder, fetched=len(records))
        return records


# ------------------------------------------------------------------
# Helpers
# ------------------------------------------------------------------


def parse_fetch_response(uid: int, data: list[Any]) -> RawRecord:
    """Turn an ``imaplib`` UID FETCH response into a :class:`RawRecord`.

    Literal sections arrive as ``(descriptor, payload)`` tuples; the
    trailing ``)`` and any items sent after the last literal arrive as
    bare bytes.
    """
    header: bytes | None = None
    text: bytes | None = None
    meta = b""

    for item in data:
        if isinstance(item, tuple):
            if len(item) < 2:
                raise ProtocolError(f"uid {uid}: truncated literal in fetch response")
            descriptor, payload = item[0], item[1]
            meta += descriptor + b" "
            if b"BODY[HEADER]" in descriptor:
                header = payload
            elif b"BODY[TEXT]" in descriptor:
                text = payload
        elif isinstance(item, bytes):
            meta += item + b" "

    # An empty section may be sent as a quoted string instead of a literal.
    if text is None and b'BODY[TEXT] ""' in meta:
        text = b""

    flags = [flag.decode("ascii", "replace") for flag in imaplib.ParseFlags(meta)]

    internal_date: datetime | None = None
    parsed = imaplib.Internaldate2tuple(meta)
    if parsed is not None:
        internal_date = datetime.fromtimestamp(time.mktime(parsed), tz=UTC)

    return RawRecord(
        uid=uid,
        header=header,
        text=text,
        flags=flags,
        internal_date=internal_date,
    )


def _teardown(conn: imaplib.IMAP4) -> None:
    try:
        conn.logout()
    except (imaplib.IMAP4.error, OSError):
        # logout() skips shutdown() when the LOGOUT command itself fails
        try:
            conn.shutdown()
        except OSError:
            pass


def _quote_mailbox(name: str) -> str:
    if name.startswith('"') or not any(ch in name for ch in ' "\\'):
        return name
    escaped = name.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def _describe(data: Any) -> str:
    if data and isinstance(data[0], bytes):
        return data[0].decode("utf-8", "replace")
    return str(data)
