"""Minimal FastCGI client: record codec and a single-request RESPONDER exchange.

Record wire format (FastCGI 1.0, 8 byte header + content + padding):
+---------+---------+------------+----------------+---------+----------+
| version | type    | request id | content length | padding | reserved |
| (1 byte)| (1 byte)| (2 bytes)  | (2 bytes)      | (1 byte)| (1 byte) |
+---------+---------+------------+----------------+---------+----------+
|                content (0-65535 bytes) + padding                     |
+----------------------------------------------------------------------+
"""

from __future__ import annotations

import logging
import socket
import struct
from dataclasses import dataclass, field
from typing import BinaryIO

from ..exceptions import FastCGIError

logger = logging.getLogger(__name__)

FCGI_VERSION_1 = 1

FCGI_BEGIN_REQUEST = 1
FCGI_END_REQUEST = 3
FCGI_PARAMS = 4
FCGI_STDIN = 5
FCGI_STDOUT = 6
FCGI_STDERR = 7

FCGI_RESPONDER = 1

FCGI_REQUEST_COMPLETE = 0
FCGI_CANT_MPX_CONN = 1
FCGI_OVERLOADED = 2
FCGI_UNKNOWN_ROLE = 3

HEADER_FORMAT = ">BBHHBx"
HEADER_SIZE = struct.calcsize(HEADER_FORMAT)
BEGIN_REQUEST_FORMAT = ">HB5x"
END_REQUEST_FORMAT = ">IB3x"
MAX_CONTENT_LENGTH = 0xFFFF

_PROTOCOL_STATUS_NAMES = {
    FCGI_CANT_MPX_CONN: "cannot multiplex connection",
    FCGI_OVERLOADED: "overloaded",
    FCGI_UNKNOWN_ROLE: "unknown role",
}


@dataclass(frozen=True)
class Record:
    type: int
    request_id: int
    content: bytes = b""


def encode_record(record_type: int, request_id: int, content: bytes = b"") -> bytes:
    """Encode one record, padding the content to an 8 byte boundary."""
    length = len(content)
    if length > MAX_CONTENT_LENGTH:
        raise ValueError(f"record content too long: {length} bytes")
    padding = -length % 8
    header = struct.pack(HEADER_FORMAT, FCGI_VERSION_1, record_type, request_id, length, padding)
    return header + content + b"\x00" * padding


def encode_stream(record_type: int, request_id: int, data: bytes) -> bytes:
    """Encode a stream (PARAMS/STDIN) as content records followed by the empty terminator."""
    chunks = [
        encode_record(record_type, request_id, data[i : i + MAX_CONTENT_LENGTH])
        for i in range(0, len(data), MAX_CONTENT_LENGTH)
    ]
    chunks.append(encode_record(record_type, request_id))
    return b"".join(chunks)


def _encode_length(length: int) -> bytes:
    if length < 0x80:
        return bytes([length])
    return struct.pack(">I", length | 0x80000000)


def encode_params(params: dict[str, str]) -> bytes:
    """Encode name-value pairs for a PARAMS stream."""
    out = bytearray()
    for name, value in params.items():
        name_bytes = name.encode("utf-8")
        value_bytes = str(value).encode("utf-8")
        out += _encode_length(len(name_bytes))
        out += _encode_length(len(value_bytes))
        out += name_bytes
        out += value_bytes
    return bytes(out)


def read_record(stream: BinaryIO) -> Record | None:
    """Read one record from a buffered stream. Returns None on clean EOF."""
    header = stream.read(HEADER_SIZE)
    if not header:
        return None
    if len(header) < HEADER_SIZE:
        raise FastCGIError("Truncated FastCGI record header")

    version, record_type, request_id, length, padding = struct.unpack(HEADER_FORMAT, header)
    if version != FCGI_VERSION_1:
        raise FastCGIError(f"Unsupported FastCGI version {version}")

    body = stream.read(length + padding)
    if len(body) < length + padding:
        raise FastCGIError("Truncated FastCGI record content")
    return Record(type=record_type, request_id=request_id, content=body[:length])


@dataclass
class FastCGIResponse:
    stdout: bytes = b""
    stderr: bytes = b""
    app_status: int = 0
    headers: dict[str, str] = field(default_factory=dict)

    @property
    def status(self) -> int:
        """HTTP status from the CGI "Status" header (200 when absent)."""
        raw = self.headers.get("status", "200")
        try:
            return int(raw.split()[0])
        except (ValueError, IndexError):
            return 200

    @property
    def body(self) -> bytes:
        _, sep, body = self.stdout.partition(b"\r\n\r\n")
        return body if sep else self.stdout


def parse_cgi_headers(stdout: bytes) -> dict[str, str]:
    """Parse the CGI header block that precedes the response body."""
    if b"\r\n\r\n" not in stdout:
        return {}
    head, _, _ = stdout.partition(b"\r\n\r\n")
    headers: dict[str, str] = {}
    for line in head.decode("latin-1").split("\r\n"):
        name, sep, value = line.partition(":")
        if sep:
            headers[name.strip().lower()] = value.strip()
    return headers


class FastCGIClient:
    """Sends single RESPONDER requests to a FastCGI server (e.g. PHP-FPM).

    ``host`` is a hostname/IP, or a filesystem path (starting with ``/``) for a
    unix domain socket, in which case ``port`` is ignored.
    """

    REQUEST_ID = 1

    def __init__(self, host: str, port: int | None = None, timeout: float = 10.0):
        self.host = host
        self.port = port
        self.timeout = timeout

    @property
    def address(self) -> str:
        if self._is_unix:
            return self.host
        return f"{self.host}:{self.port}"

    @property
    def _is_unix(self) -> bool:
        return self.host.startswith("/")

    def request(self, params: dict[str, str], stdin: bytes = b"") -> FastCGIResponse:
        """Send one request and collect the response until END_REQUEST."""
        rid = self.REQUEST_ID
        payload = b"".join((
            encode_record(FCGI_BEGIN_REQUEST, rid, struct.pack(BEGIN_REQUEST_FORMAT, FCGI_RESPONDER, 0)),
            encode_stream(FCGI_PARAMS, rid, encode_params(params)),
            encode_stream(FCGI_STDIN, rid, stdin),
        ))

        logger.debug("FastCGI request to %s script=%s", self.address, params.get("SCRIPT_FILENAME"))
        try:
            with self._connect() as sock:
                sock.sendall(payload)
                with sock.makefile("rb") as stream:
                    return self._read_response(stream, rid)
        except OSError as exc:
            raise FastCGIError(f"FastCGI connection to {self.address} failed: {exc}") from exc

    def _connect(self) -> socket.socket:
        if self._is_unix:
            sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
            sock.settimeout(self.timeout)
            try:
                sock.connect(self.host)
            except OSError:
                sock.close()
                raise
            return sock
        return socket.create_connection((self.host, self.port), timeout=self.timeout)

    def _read_response(self, stream: BinaryIO, request_id: int) -> FastCGIResponse:
        stdout = bytearray()
        stderr = bytearray()

        while True:
            record = read_record(stream)
            if record is None:
                raise FastCGIError(f"Connection to {self.address} closed before END_REQUEST")
            if record.request_id != request_id:
                logger.debug("Ignoring record for foreign request id %d", record.request_id)
                continue

            if record.type == FCGI_STDOUT:
                stdout += record.content
            elif record.type == FCGI_STDERR:
                stderr += record.content
            elif record.type == FCGI_END_REQUEST:
                if len(record.content) < struct.calcsize(END_REQUEST_FORMAT):
                    raise FastCGIError(f"Malformed END_REQUEST from {self.address}")
                app_status, protocol_status = struct.unpack(END_REQUEST_FORMAT, record.content[:8])
                if protocol_status != FCGI_REQUEST_COMPLETE:
                    reason = _PROTOCOL_STATUS_NAMES.get(protocol_status, str(protocol_status))
                    raise FastCGIError(
                        f"FastCGI request to {self.address} rejected: {reason}",
                        protocol_status=protocol_status,
                    )
                if stderr:
                    logger.debug("FastCGI stderr from %s: %s", self.address, bytes(stderr)[:500])
                return FastCGIResponse(
                    stdout=bytes(stdout),
                    stderr=bytes(stderr),
                    app_status=app_status,
                    headers=parse_cgi_headers(bytes(stdout)),
                )
            else:
                logger.debug("Ignoring FastCGI record type %d", record.type)
