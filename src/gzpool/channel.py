from __future__ import annotations

import os
import struct
from enum import Enum

MAX_NAME_BYTES = 255
RESULT_SUCCESS = "Success"
RESULT_ERROR = "Error"
RESULT_TOKENS = frozenset({RESULT_SUCCESS, RESULT_ERROR})
SHUTDOWN = object()

_LENGTH = struct.Struct(">H")
_TOKEN_DELIMITER = b"\n"
# A token longer than this without a delimiter is garbage, not a partial read.
_MAX_TOKEN_BYTES = 64


class FramingError(ValueError):
    pass


class Role(str, Enum):
    DISPATCHER = "dispatcher"
    WORKER = "worker"


class ChannelPair:
    """Job pipe (dispatcher -> worker) and result pipe (worker -> dispatcher) for one worker."""

    def __init__(self, job_read: int, job_write: int, result_read: int, result_write: int) -> None:
        self.job_read: int | None = job_read
        self.job_write: int | None = job_write
        self.result_read: int | None = result_read
        self.result_write: int | None = result_write
        self.role: Role | None = None

    @classmethod
    def create(cls) -> ChannelPair:
        job_read, job_write = os.pipe()
        try:
            result_read, result_write = os.pipe()
        except OSError:
            os.close(job_read)
            os.close(job_write)
            raise
        return cls(job_read, job_write, result_read, result_write)

    def split(self, role: Role) -> None:
        if self.role is not None:
            raise RuntimeError(f"channel already split for {self.role.value}")
        self.role = role
        if role is Role.WORKER:
            self._close("job_write")
            self._close("result_read")
        else:
            self._close("job_read")
            self._close("result_write")

    def close(self) -> None:
        for name in ("job_read", "job_write", "result_read", "result_write"):
            self._close(name)

    def close_job_stream(self) -> None:
        self._close("job_write")

    def open_fds(self) -> list[int]:
        fds = [self.job_read, self.job_write, self.result_read, self.result_write]
        return [fd for fd in fds if fd is not None]

    def _close(self, name: str) -> None:
        fd = getattr(self, name)
        if fd is None:
            return
        setattr(self, name, None)
        os.close(fd)


def write_all(fd: int, payload: bytes) -> None:
    view = memoryview(payload)
    while view:
        written = os.write(fd, view)
        view = view[written:]


def read_exact(fd: int, size: int) -> bytes | None:
    """Read exactly ``size`` bytes; ``None`` when the stream ends first."""
    chunks: list[bytes] = []
    remaining = size
    while remaining:
        chunk = os.read(fd, remaining)
        if not chunk:
            return None
        chunks.append(chunk)
        remaining -= len(chunk)
    return b"".join(chunks)


def encode_job(name: str) -> bytes:
    payload = name.encode("utf-8")
    if not payload:
        raise FramingError("file name must not be empty")
    if len(payload) > MAX_NAME_BYTES:
        raise FramingError(f"file name exceeds {MAX_NAME_BYTES} bytes: {name!r}")
    return _LENGTH.pack(len(payload)) + payload


def encode_shutdown() -> bytes:
    return _LENGTH.pack(0)


def read_job(fd: int) -> str | object | None:
    """Read one job frame: a file name, ``SHUTDOWN``, or ``None`` at end of stream."""
    header = read_exact(fd, _LENGTH.size)
    if header is None:
        return None
    (length,) = _LENGTH.unpack(header)
    if length == 0:
        return SHUTDOWN
    if length > MAX_NAME_BYTES:
        raise FramingError(f"job frame length {length} exceeds {MAX_NAME_BYTES}")
    payload = read_exact(fd, length)
    if payload is None:
        return None
    return payload.decode("utf-8")


def encode_result(ok: bool) -> bytes:
    token = RESULT_SUCCESS if ok else RESULT_ERROR
    return token.encode("ascii") + _TOKEN_DELIMITER


class ResultReader:
    """Reassembles newline-framed result tokens from a non-blocking result stream."""

    def __init__(self, fd: int, chunk_size: int = 64) -> None:
        self.fd = fd
        self.chunk_size = chunk_size
        self.buffer = b""
        self.eof = False

    def read_available(self) -> list[str]:
        try:
            chunk = os.read(self.fd, self.chunk_size)
        except BlockingIOError:
            return []
        if not chunk:
            self.eof = True
            return []
        return self.feed(chunk)

    def feed(self, chunk: bytes) -> list[str]:
        self.buffer += chunk
        tokens: list[str] = []
        while _TOKEN_DELIMITER in self.buffer:
            raw, self.buffer = self.buffer.split(_TOKEN_DELIMITER, 1)
            token = raw.decode("ascii", errors="replace")
            if token not in RESULT_TOKENS:
                raise FramingError(f"unknown result token: {token!r}")
            tokens.append(token)
        if len(self.buffer) > _MAX_TOKEN_BYTES:
            raise FramingError(f"unterminated result token: {self.buffer[:_MAX_TOKEN_BYTES]!r}")
        return tokens
