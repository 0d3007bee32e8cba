# =============================================================================
# IMAP Client
# =============================================================================
# Provides an async IMAP client wrapper around aioimaplib.
#
# Key responsibilities:
#   - Connection lifecycle (connect, STARTTLS/SSL, login, logout)
#   - Folder operations (list, select)
#   - Message operations (fetch, fetch flags, store flags, move, expunge)
#   - Fetching a single body part for attachment downloads
#
# Design notes:
#   - One IMAPClient is one connection. Raw round trips are serialized with
#     a lock; IMAP allows pipelining but aioimaplib responses are easier to
#     attribute one command at a time.
#   - Every round trip is bounded by a timeout. A timeout or transport error
#     drops the connection and raises MailConnectionError; the connection
#     manager reconnects on next use.
#   - A NO/BAD answer leaves the connection usable and raises ProtocolError.
# =============================================================================

import asyncio
import base64
import binascii
import email
import email.errors
import email.header
import email.utils
import logging
import quopri
import re
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.message import Message as EmailMessage
from enum import Enum
from typing import TYPE_CHECKING, Any

from aioimaplib import aioimaplib

from kestrel.core import (
    Attachment,
    AuthenticationError,
    CredentialNotFoundError,
    Folder,
    MailConnectionError,
    Message,
    MessageFlags,
    NotFoundError,
    ProtocolError,
)
from kestrel.core.message import flags_from_imap

if TYPE_CHECKING:
    from kestrel.core import Account
    from kestrel.credentials import CredentialStore

logger = logging.getLogger(__name__)

# UIDs per STORE/MOVE/COPY command, to stay under server line limits
COMMAND_BATCH_SIZE = 100

FETCH_START = re.compile(rb"^\d+\s+FETCH\s*\(", re.IGNORECASE)
LITERAL_MARKER = re.compile(rb"(BODY\[[^\]]*\])(?:<\d+>)?\s*\{(\d+)\}\s*$", re.IGNORECASE)
QUOTED_SECTION = re.compile(rb'BODY\[([^\]]*)\]\s+"((?:[^"\\]|\\.)*)"', re.IGNORECASE)
COPYUID = re.compile(r"COPYUID\s+(\d+)\s+([\d:,]+)\s+([\d:,]+)", re.IGNORECASE)


def _quote_folder_name(name: str) -> str:
    """
    Quote an IMAP folder name if it contains special characters.

    Args:
        name: The folder name to quote.

    Returns:
        Properly quoted folder name for IMAP commands.
    """
    if ' ' in name or '"' in name or '\\' in name or any(c in name for c in '(){}[]%*'):
        escaped = name.replace('\\', '\\\\').replace('"', '\\"')
        return f'"{escaped}"'
    return name


def _uid_set(uids: list[int]) -> str:
    return ",".join(str(u) for u in uids)


def _expand_uid_set(value: str) -> list[int]:
    """Expand an IMAP sequence set like "304,319:320" into [304, 319, 320]."""
    result: list[int] = []
    for chunk in value.split(","):
        if ":" in chunk:
            start, end = (int(x) for x in chunk.split(":", 1))
            step = 1 if end >= start else -1
            result.extend(range(start, end + step, step))
        elif chunk:
            result.append(int(chunk))
    return result


def _line_text(line: bytes | bytearray | str) -> str:
    if isinstance(line, (bytes, bytearray)):
        return bytes(line).decode("utf-8", errors="replace")
    return str(line)


class ConnectionPhase(Enum):
    """
    Lifecycle of one protocol connection.

    DISCONNECTED -> CONNECTING -> AUTHENTICATED -> READY -> DISCONNECTED.
    A failed attempt passes through FAILED and settles on DISCONNECTED.
    """
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    AUTHENTICATED = "authenticated"
    READY = "ready"
    FAILED = "failed"


@dataclass
class FolderStatus:
    """
    Watermark and size of a folder as reported by SELECT.

    Attributes:
        exists: Number of messages in the folder.
        uidvalidity: The validity epoch.
        uidnext: The next-sequence counter.
    """
    exists: int = 0
    uidvalidity: int = 0
    uidnext: int = 1


@dataclass
class FetchRecord:
    """One FETCH response: its attribute text plus any literal sections."""
    text: bytes = b""
    sections: dict[str, bytes] = field(default_factory=dict)

    @property
    def uid(self) -> int | None:
        match = re.search(rb"UID\s+(\d+)", self.text, re.IGNORECASE)
        return int(match.group(1)) if match else None

    @property
    def flags(self) -> MessageFlags:
        match = re.search(rb"FLAGS\s*\(([^)]*)\)", self.text, re.IGNORECASE)
        if not match:
            return MessageFlags.NONE
        return flags_from_imap(match.group(1).decode("ascii", errors="replace").split())


class IMAPClient:
    """
    Async IMAP client for Kestrel.

    Usage:
        >>> client = IMAPClient(account, credentials)
        >>> await client.connect()
        >>> folders = await client.list_folders()
        >>> status = await client.select_folder("INBOX")
        >>> messages = await client.fetch_messages("INBOX", [41, 42])
        >>> await client.disconnect()

    Attributes:
        account: The Account configuration for this connection.
        phase: Current ConnectionPhase.
        capabilities: Server capabilities after login.
    """

    def __init__(
        self,
        account: "Account",
        credentials: "CredentialStore",
        *,
        connect_timeout: float = 30.0,
        command_timeout: float = 60.0,
    ) -> None:
        self.account = account
        self.credentials = credentials
        self.connect_timeout = connect_timeout
        self.command_timeout = command_timeout

        self.phase = ConnectionPhase.DISCONNECTED
        self.capabilities: set[str] = set()
        self.selected_folder: str | None = None

        self._client: aioimaplib.IMAP4_SSL | aioimaplib.IMAP4 | None = None
        self._command_lock = asyncio.Lock()

    @property
    def is_connected(self) -> bool:
        return self.phase is ConnectionPhase.READY and self._client is not None

    def has_capability(self, name: str) -> bool:
        return name.upper() in self.capabilities

    # =========================================================================
    # Connection Management
    # =========================================================================

    async def connect(self) -> None:
        """
        Establish and authenticate the connection.

        Raises:
            MailConnectionError: If the server cannot be reached in time.
            AuthenticationError: If login fails or no password is stored.
            ProtocolError: If the server misbehaves (e.g. no STARTTLS).
            StoreError: If the keyring cannot be read.
        """
        if self.is_connected:
            return

        self.phase = ConnectionPhase.CONNECTING
        try:
            password = await self.credentials.get_for(self.account)
        except CredentialNotFoundError as e:
            self._fail()
            raise AuthenticationError(str(e)) from e
        except BaseException:
            self._fail()
            raise

        logger.info(f"Connecting to {self.account.imap_host}:{self.account.imap_port}")
        try:
            await asyncio.wait_for(self._open(password), timeout=self.connect_timeout)
        except asyncio.TimeoutError as e:
            self._fail()
            raise MailConnectionError(
                f"Connection timed out to {self.account.imap_host}:{self.account.imap_port}"
            ) from e
        except (OSError, aioimaplib.Error) as e:
            self._fail()
            raise MailConnectionError(
                f"Failed to connect to {self.account.imap_host}:{self.account.imap_port}: {e}"
            ) from e
        except BaseException:
            self._fail()
            raise

        self.phase = ConnectionPhase.READY
        logger.info(f"Connected to {self.account.imap_host} as {self.account.username}")

    async def _open(self, password: str) -> None:
        if self.account.imap_security == "ssl":
            self._client = aioimaplib.IMAP4_SSL(
                host=self.account.imap_host,
                port=self.account.imap_port,
                timeout=self.command_timeout,
            )
        else:
            self._client = aioimaplib.IMAP4(
                host=self.account.imap_host,
                port=self.account.imap_port,
                timeout=self.command_timeout,
            )

        await self._client.wait_hello_from_server()
        self.capabilities = {c.upper() for c in self._client.protocol.capabilities}
        logger.debug(f"Server capabilities: {sorted(self.capabilities)}")

        if self.account.imap_security == "starttls":
            if not self._client.has_capability("STARTTLS"):
                raise ProtocolError(f"{self.account.imap_host} does not support STARTTLS")
            logger.debug("Upgrading to TLS via STARTTLS")
            await self._client.starttls()

        response = await self._client.login(self.account.username, password)
        if response.result != "OK":
            raise AuthenticationError(
                f"Authentication failed for {self.account.username}: "
                f"{_line_text(response.lines[-1]) if response.lines else response.result}"
            )
        self.phase = ConnectionPhase.AUTHENTICATED

        # Capabilities may grow after login (MOVE, UIDPLUS...)
        self.capabilities = {c.upper() for c in self._client.protocol.capabilities}

    def _fail(self) -> None:
        self.phase = ConnectionPhase.FAILED
        self._drop()

    def _drop(self) -> None:
        """Forget the connection without talking to the server."""
        client, self._client = self._client, None
        if client is not None:
            transport = getattr(getattr(client, "protocol", None), "transport", None)
            if transport is not None:
                transport.close()
        self.selected_folder = None
        self.phase = ConnectionPhase.DISCONNECTED

    async def disconnect(self) -> None:
        """
        Gracefully disconnect. Safe to call in any phase, any number of times.
        """
        client = self._client
        if client is None:
            self.phase = ConnectionPhase.DISCONNECTED
            return
        try:
            logger.debug("Sending LOGOUT")
            await asyncio.wait_for(client.logout(), timeout=self.command_timeout)
        except (asyncio.TimeoutError, OSError, aioimaplib.Error) as e:
            logger.warning(f"Error during logout: {e}")
        finally:
            self._drop()

    async def _run(
        self,
        name: str,
        call: Callable[[Any], Awaitable[Any]],
    ) -> Any:
        """
        Execute one IMAP command with the command lock and timeout.

        Raises:
            MailConnectionError: Not connected, timed out, or transport failure.
            ProtocolError: The server answered NO or BAD.
        """
        async with self._command_lock:
            if self._client is None or self.phase is not ConnectionPhase.READY:
                raise MailConnectionError(f"Not connected to {self.account.imap_host}")
            try:
                response = await asyncio.wait_for(call(self._client), timeout=self.command_timeout)
            except asyncio.TimeoutError as e:
                self._drop()
                raise MailConnectionError(f"IMAP {name} timed out") from e
            except (OSError, aioimaplib.Error) as e:
                self._drop()
                raise MailConnectionError(f"IMAP {name} failed: {e}") from e
            except asyncio.CancelledError:
                # The response may still be on the wire; the stream is unusable
                self._drop()
                raise

        if response.result != "OK":
            detail = _line_text(response.lines[-1]) if response.lines else ""
            raise ProtocolError(f"IMAP {name} failed: {response.result} {detail}".strip())
        return response

    # =========================================================================
    # Folder Operations
    # =========================================================================

    async def list_folders(self) -> list[Folder]:
        """
        Fetch the list of all folders.

        Returns:
            Folder objects with path, delimiter, role and selectability.
            account_id is set; ids and parent links are left to storage.
        """
        response = await self._run("LIST", lambda c: c.list('""', "*"))

        folders = []
        for line in response.lines:
            folder = self._parse_folder_line(line)
            if folder:
                folders.append(folder)

        logger.debug(f"Found {len(folders)} folders")
        return folders

    def _parse_folder_line(self, line: bytes | bytearray | str) -> Folder | None:
        """
        Parse a single LIST response line into a Folder object.

        LIST response format:
            (\\HasNoChildren) "/" "INBOX"
            (\\HasNoChildren \\Sent) "/" Sent
            (\\Noselect) NIL Shared
        """
        text = _line_text(line).strip()
        if not text.startswith("("):
            return None

        match = re.match(r'\(([^)]*)\)\s+(?:"((?:[^"\\]|\\.)*)"|NIL)\s+(.+)$', text, re.IGNORECASE)
        if not match:
            logger.warning(f"Could not parse folder line: {text}")
            return None

        flags_str, delimiter, name = match.groups()
        attributes = flags_str.split() if flags_str else []
        name = name.strip()
        if name.startswith('"') and name.endswith('"'):
            name = name[1:-1].replace('\\"', '"').replace("\\\\", "\\")
        delimiter = (delimiter or "").replace("\\\\", "\\")

        lowered = {a.lower() for a in attributes}
        return Folder(
            name=Folder.leaf_name(name, delimiter),
            path=name,
            account_id=self.account.id or 0,
            folder_type=Folder.detect_type(name, attributes),
            delimiter=delimiter,
            is_selectable=not ({"\\noselect", "\\nonexistent"} & lowered),
        )

    async def select_folder(self, path: str, readonly: bool = False) -> FolderStatus:
        """
        Select a folder and read its watermark.

        Args:
            path: Full folder path.
            readonly: Use EXAMINE instead of SELECT.

        Returns:
            FolderStatus with EXISTS, UIDVALIDITY and UIDNEXT.

        Raises:
            ProtocolError: If selection fails or the watermark is missing.
        """
        quoted = _quote_folder_name(path)
        # A refused SELECT leaves nothing selected on the server
        self.selected_folder = None
        if readonly:
            response = await self._run("EXAMINE", lambda c: c.examine(quoted))
        else:
            response = await self._run("SELECT", lambda c: c.select(quoted))
        self.selected_folder = path

        values: dict[str, int] = {}
        for line in response.lines:
            text = _line_text(line)
            match = re.search(r"(\d+)\s+EXISTS", text, re.IGNORECASE)
            if match:
                values["EXISTS"] = int(match.group(1))
            for key in ("UIDVALIDITY", "UIDNEXT"):
                match = re.search(rf"{key}\s+(\d+)", text, re.IGNORECASE)
                if match:
                    values[key] = int(match.group(1))

        if "UIDVALIDITY" not in values or "UIDNEXT" not in values:
            raise ProtocolError(f"Server did not report UIDVALIDITY/UIDNEXT for '{path}'")

        status = FolderStatus(
            exists=values.get("EXISTS", 0),
            uidvalidity=values["UIDVALIDITY"],
            uidnext=values["UIDNEXT"],
        )
        logger.debug(f"Selected {path}: {status}")
        return status

    async def _ensure_selected(self, path: str) -> None:
        if self.selected_folder != path:
            await self.select_folder(path)

    # =========================================================================
    # Message Fetching
    # =========================================================================

    async def fetch_flags(self, path: str, below_uid: int) -> dict[int, MessageFlags]:
        """
        Fetch UID and flags of every message with UID below `below_uid`.

        This is a lightweight listing used to find new messages, flag changes
        and expunges.

        Returns:
            Mapping of UID to flags.
        """
        if below_uid <= 1:
            return {}
        await self._ensure_selected(path)
        response = await self._run(
            "UID FETCH", lambda c: c.uid("FETCH", f"1:{below_uid - 1}", "(UID FLAGS)")
        )

        result: dict[int, MessageFlags] = {}
        for record in self._parse_fetch_response(response.lines):
            uid = record.uid
            if uid is not None and uid < below_uid:
                result[uid] = record.flags
        return result

    async def fetch_messages(self, path: str, uids: list[int]) -> list[Message]:
        """
        Fetch full messages by UID.

        Args:
            path: Folder to fetch from.
            uids: UIDs to fetch.

        Returns:
            Parsed messages (attachment payloads are not kept).
        """
        if not uids:
            return []
        await self._ensure_selected(path)
        uid_set = _uid_set(uids)
        response = await self._run(
            "UID FETCH",
            lambda c: c.uid("FETCH", uid_set, "(UID FLAGS RFC822.SIZE BODY.PEEK[])"),
        )

        wanted = set(uids)
        messages = []
        for record in self._parse_fetch_response(response.lines):
            uid = record.uid
            raw = record.sections.get("BODY[]")
            if uid is None or uid not in wanted or raw is None:
                continue
            message = self._build_message(raw)
            message.uid = uid
            message.flags = record.flags
            message.account_id = self.account.id
            messages.append(message)

        logger.debug(f"Fetched {len(messages)} messages from {path}")
        return messages

    async def fetch_attachment(
        self,
        path: str,
        uid: int,
        part_id: str,
        encoding: str = "",
    ) -> bytes:
        """
        Fetch and decode one body part.

        Args:
            path: Folder holding the message.
            uid: Message UID.
            part_id: IMAP section number, e.g. "2" or "1.3".
            encoding: Content-Transfer-Encoding of the part.

        Returns:
            The decoded payload.

        Raises:
            NotFoundError: If the server returned no such part.
        """
        await self._ensure_selected(path)
        response = await self._run(
            "UID FETCH", lambda c: c.uid("FETCH", str(uid), f"(UID BODY.PEEK[{part_id}])")
        )

        key = f"BODY[{part_id}]"
        for record in self._parse_fetch_response(response.lines):
            if record.uid == uid and key in record.sections:
                return self._decode_transfer(record.sections[key], encoding)
        raise NotFoundError(f"Part {part_id} of UID {uid} not found in '{path}'")

    @staticmethod
    def _decode_transfer(data: bytes, encoding: str) -> bytes:
        encoding = encoding.lower().strip()
        if encoding == "base64":
            try:
                return base64.b64decode(data)
            except binascii.Error as e:
                raise ProtocolError(f"Malformed base64 attachment: {e}") from e
        if encoding == "quoted-printable":
            return quopri.decodestring(data)
        return data

    def _parse_fetch_response(self, lines: list) -> list[FetchRecord]:
        """
        Group FETCH response items into records.

        aioimaplib returns a flat list: a text line for each "N FETCH (..."
        start, the literal payload as a separate bytearray item after any line
        ending in {size}, and further text lines carrying the remaining
        attributes and the closing parenthesis.
        """
        records: list[FetchRecord] = []
        current: FetchRecord | None = None
        pending_section: str | None = None

        for item in lines:
            data = bytes(item) if isinstance(item, (bytes, bytearray)) else str(item).encode()

            if pending_section is not None and current is not None:
                current.sections[pending_section] = data
                pending_section = None
                continue

            if FETCH_START.match(data):
                current = FetchRecord(text=data)
                records.append(current)
            elif current is not None:
                current.text += b" " + data.strip()
            else:
                continue

            marker = LITERAL_MARKER.search(data)
            if marker:
                pending_section = marker.group(1).upper().decode("ascii")
                continue

            for section, value in QUOTED_SECTION.findall(data):
                name = f"BODY[{section.decode('ascii').upper()}]"
                current.sections[name] = re.sub(rb"\\(.)", rb"\1", value)

        return records

    # =========================================================================
    # Message Parsing
    # =========================================================================

    def _build_message(self, raw: bytes) -> Message:
        """Build a Message from raw RFC 5322 bytes."""
        msg = email.message_from_bytes(raw)

        sender_name, sender = email.utils.parseaddr(self._decode_header(msg.get("From", "")))
        body_text, body_html, attachments = self._parse_body(msg)

        return Message(
            message_id=(msg.get("Message-ID") or "").strip(),
            in_reply_to=(msg.get("In-Reply-To") or "").strip(),
            references=(msg.get("References") or "").split(),
            subject=self._decode_header(msg.get("Subject", "")),
            sender=sender,
            sender_name=sender_name,
            recipients=self._addresses(msg, "To"),
            cc=self._addresses(msg, "Cc"),
            bcc=self._addresses(msg, "Bcc"),
            reply_to=self._addresses(msg, "Reply-To"),
            date_sent=self._parse_date(msg.get("Date")),
            date_received=datetime.now(timezone.utc),
            body_text=body_text,
            body_html=body_html,
            has_attachments=any(not a.is_inline for a in attachments),
            attachments=attachments,
        )

    def _addresses(self, msg: EmailMessage, header: str) -> list[str]:
        values = [self._decode_header(v) for v in msg.get_all(header, [])]
        return [addr for _, addr in email.utils.getaddresses(values) if addr]

    @staticmethod
    def _parse_date(value: str | None) -> datetime | None:
        """Parse a Date header and normalize to UTC for consistent sorting."""
        if not value:
            return None
        try:
            parsed = email.utils.parsedate_to_datetime(value)
        except (TypeError, ValueError, IndexError):
            return None
        if parsed.tzinfo is not None:
            return parsed.astimezone(timezone.utc)
        return parsed.replace(tzinfo=timezone.utc)

    @staticmethod
    def _decode_header(value: str) -> str:
        """Decode RFC 2047 encoded header value."""
        if not value:
            return ""
        try:
            decoded_parts = email.header.decode_header(str(value))
        except email.errors.HeaderParseError:
            return str(value)
        result = ""
        for part, charset in decoded_parts:
            if isinstance(part, bytes):
                try:
                    result += part.decode(charset or "utf-8", errors="replace")
                except LookupError:
                    result += part.decode("utf-8", errors="replace")
            else:
                result += part
        return result

    def _parse_body(self, msg: EmailMessage) -> tuple[str, str, list[Attachment]]:
        """
        Split a message into text body, HTML body and attachment metadata.

        Returns:
            Tuple of (body_text, body_html, attachments).
        """
        body_text = ""
        body_html = ""
        attachments: list[Attachment] = []

        for part, part_id in self._walk_parts(msg):
            content_type = part.get_content_type()
            disposition = (part.get_content_disposition() or "").lower()
            filename = part.get_filename()

            if disposition == "attachment" or filename or content_type == "message/rfc822":
                attachments.append(self._attachment_meta(part, part_id))
            elif content_type == "text/plain" and not body_text:
                body_text = self._decode_part(part)
            elif content_type == "text/html" and not body_html:
                body_html = self._decode_part(part)
            elif not content_type.startswith("text/"):
                # Inline image or other embedded resource
                attachment = self._attachment_meta(part, part_id)
                attachment.is_inline = True
                attachments.append(attachment)

        return body_text, body_html, attachments

    def _walk_parts(self, msg: EmailMessage, prefix: str = ""):
        """
        Yield (leaf part, IMAP section number) pairs.

        A non-multipart message has its body in section "1". Children of a
        multipart are numbered 1..n below their parent's number.
        Encapsulated messages are treated as leaves.
        """
        if not msg.is_multipart() or msg.get_content_type() == "message/rfc822":
            yield msg, prefix or "1"
            return
        for index, child in enumerate(msg.get_payload(), start=1):
            child_id = f"{prefix}.{index}" if prefix else str(index)
            if child.is_multipart() and child.get_content_type() != "message/rfc822":
                yield from self._walk_parts(child, child_id)
            else:
                yield child, child_id

    def _attachment_meta(self, part: EmailMessage, part_id: str) -> Attachment:
        content_type = part.get_content_type()
        filename = part.get_filename()
        if filename:
            filename = self._decode_header(filename)
        else:
            ext = content_type.split("/")[-1] if "/" in content_type else "bin"
            filename = f"attachment.{ext}"

        payload = part.get_payload(decode=True)
        size = len(payload) if isinstance(payload, bytes) else 0
        content_id = part.get("Content-ID")

        return Attachment(
            filename=filename,
            content_type=content_type,
            size=size,
            content_id=content_id.strip().strip("<>") if content_id else None,
            is_inline=(part.get_content_disposition() or "").lower() == "inline",
            part_id=part_id,
            encoding=(part.get("Content-Transfer-Encoding") or "").strip().lower(),
        )

    @staticmethod
    def _decode_part(part: EmailMessage) -> str:
        """Decode a message part to string."""
        payload = part.get_payload(decode=True)
        if isinstance(payload, bytes):
            charset = part.get_content_charset() or "utf-8"
            try:
                return payload.decode(charset, errors="replace")
            except LookupError:
                return payload.decode("utf-8", errors="replace")
        return str(payload) if payload else ""

    # =========================================================================
    # Flag Operations
    # =========================================================================

    async def set_flags(
        self,
        path: str,
        uids: list[int],
        flags: list[str],
        *,
        add: bool = True,
    ) -> None:
        """
        Add or remove flags on messages.

        Args:
            path: Folder containing the messages.
            uids: UIDs of messages to modify.
            flags: Flags to add/remove (e.g., ["\\Seen", "\\Flagged"]).
            add: If True, add flags. If False, remove flags.
        """
        if not uids or not flags:
            return
        await self._ensure_selected(path)

        command = f"{'+' if add else '-'}FLAGS.SILENT ({' '.join(flags)})"
        for i in range(0, len(uids), COMMAND_BATCH_SIZE):
            uid_set = _uid_set(uids[i:i + COMMAND_BATCH_SIZE])
            logger.debug(f"Setting flags on {uid_set}: {command}")
            await self._run("UID STORE", lambda c: c.uid("STORE", uid_set, command))

    # =========================================================================
    # Message Operations
    # =========================================================================

    async def move_messages(
        self,
        source: str,
        destination: str,
        uids: list[int],
    ) -> dict[int, int]:
        """
        Move messages from one folder to another.

        Uses MOVE if supported, otherwise COPY + \\Deleted + EXPUNGE.

        Returns:
            Mapping of source UID to destination UID, for the UIDs the
            server reported through COPYUID (UIDPLUS). May be empty.
        """
        if not uids:
            return {}
        await self._ensure_selected(source)
        quoted_dest = _quote_folder_name(destination)
        uid_map: dict[int, int] = {}

        for i in range(0, len(uids), COMMAND_BATCH_SIZE):
            batch = uids[i:i + COMMAND_BATCH_SIZE]
            uid_set = _uid_set(batch)

            if self.has_capability("MOVE"):
                logger.debug(f"Moving {len(batch)} messages to {destination} using MOVE")
                response = await self._run("UID MOVE", lambda c: c.uid("MOVE", uid_set, quoted_dest))
            else:
                logger.debug(f"Moving {len(batch)} messages to {destination} using COPY+DELETE")
                response = await self._run("UID COPY", lambda c: c.uid("COPY", uid_set, quoted_dest))
                await self.set_flags(source, batch, ["\\Deleted"], add=True)
                await self._expunge(batch)

            uid_map.update(self._parse_copyuid(response.lines))

        return uid_map

    @staticmethod
    def _parse_copyuid(lines: list) -> dict[int, int]:
        for line in lines:
            match = COPYUID.search(_line_text(line))
            if match:
                source = _expand_uid_set(match.group(2))
                dest = _expand_uid_set(match.group(3))
                if len(source) == len(dest):
                    return dict(zip(source, dest))
                logger.warning(f"Ignoring inconsistent COPYUID: {match.group(0)}")
        return {}

    async def delete_messages(self, path: str, uids: list[int]) -> None:
        """
        Permanently delete messages (\\Deleted + EXPUNGE).

        Args:
            path: Folder containing the messages.
            uids: UIDs of messages to delete.
        """
        if not uids:
            return
        await self.set_flags(path, uids, ["\\Deleted"], add=True)
        logger.debug(f"Expunging {len(uids)} deleted messages in {path}")
        await self._expunge(uids)

    async def _expunge(self, uids: list[int]) -> None:
        # UID EXPUNGE only removes our messages; plain EXPUNGE would also
        # purge anything another client marked \Deleted
        if self.has_capability("UIDPLUS"):
            uid_set = _uid_set(uids)
            await self._run("UID EXPUNGE", lambda c: c.uid("EXPUNGE", uid_set))
        else:
            await self._run("EXPUNGE", lambda c: c.expunge())
