from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import AsyncIterator, BinaryIO, Optional

from fastapi.concurrency import run_in_threadpool
from python_multipart import MultipartParser
from python_multipart.exceptions import MultipartParseError
from python_multipart.multipart import MultipartState, parse_options_header
from starlette.requests import ClientDisconnect

from .config import MAX_FIELD_BYTES
from .qpdf import CipherStrength

logger = logging.getLogger(__name__)

FILE_FIELD = "file"
PASSWORD_FIELD = "password"
STRENGTH_FIELD = "bits"

# What the current part's bytes are used for.
_TARGET = "target"
_DISCARD = "discard"
_FIELD = "field"


class UploadParseError(Exception):
    """The request body could not be read as multipart/form-data."""


@dataclass(frozen=True)
class UploadResult:
    password: str
    strength: CipherStrength
    got_file: bool
    too_large: bool


class _UploadCollector:
    """python-multipart callbacks for one request.

    Callbacks are synchronous, so file bytes are queued in `pending` and
    written by the caller between parser.write() calls.
    """

    def __init__(self, max_file_bytes: int, max_field_bytes: int) -> None:
        self.max_file_bytes = max(0, max_file_bytes)
        self.max_field_bytes = max(0, max_field_bytes)

        self.password = ""
        self.strength = CipherStrength.default()
        self.got_file = False
        self.too_large = False
        self.file_bytes = 0
        self.pending: list[bytes] = []
        # Set once the closing --boundary-- has been parsed.
        self.complete = False

        self._headers: dict[bytes, bytes] = {}
        self._header_field = b""
        self._header_value = b""
        self._name = ""
        self._kind: Optional[str] = None
        self._field_buf = bytearray()

    def callbacks(self) -> dict:
        return {
            "on_part_begin": self.on_part_begin,
            "on_part_data": self.on_part_data,
            "on_part_end": self.on_part_end,
            "on_header_field": self.on_header_field,
            "on_header_value": self.on_header_value,
            "on_header_end": self.on_header_end,
            "on_headers_finished": self.on_headers_finished,
            "on_end": self.on_end,
        }

    def on_end(self) -> None:
        self.complete = True

    def on_part_begin(self) -> None:
        self._headers = {}
        self._header_field = b""
        self._header_value = b""
        self._name = ""
        self._kind = None
        self._field_buf = bytearray()

    def on_header_field(self, data: bytes, start: int, end: int) -> None:
        self._header_field += data[start:end]

    def on_header_value(self, data: bytes, start: int, end: int) -> None:
        self._header_value += data[start:end]

    def on_header_end(self) -> None:
        self._headers[self._header_field.strip().lower()] = self._header_value.strip()
        self._header_field = b""
        self._header_value = b""

    def on_headers_finished(self) -> None:
        _, options = parse_options_header(self._headers.get(b"content-disposition", b""))
        self._name = options.get(b"name", b"").decode("utf-8", errors="replace")
        if b"filename" not in options:
            self._kind = _FIELD
        elif self._name == FILE_FIELD and not self.got_file:
            self.got_file = True
            self._kind = _TARGET
        else:
            # Other file parts (and repeats of "file") are drained, never written.
            self._kind = _DISCARD

    def on_part_data(self, data: bytes, start: int, end: int) -> None:
        if self._kind == _TARGET:
            if self.too_large:
                return
            chunk = data[start:end]
            room = self.max_file_bytes - self.file_bytes
            if len(chunk) > room:
                # Ceiling hit: keep what fits, then only drain.
                if room > 0:
                    self.pending.append(chunk[:room])
                    self.file_bytes += room
                self.too_large = True
                return
            self.pending.append(chunk)
            self.file_bytes += len(chunk)
        elif self._kind == _FIELD:
            room = self.max_field_bytes - len(self._field_buf)
            if room > 0:
                self._field_buf += data[start:min(end, start + room)]

    def on_part_end(self) -> None:
        if self._kind != _FIELD:
            return
        value = bytes(self._field_buf).decode("utf-8", errors="replace")
        if self._name == PASSWORD_FIELD:
            self.password = value
        elif self._name == STRENGTH_FIELD:
            self.strength = CipherStrength.coerce(value)

    def take_pending(self) -> bytes:
        data = b"".join(self.pending)
        self.pending.clear()
        return data


def _boundary_from(content_type: Optional[str]) -> bytes:
    if not content_type:
        raise UploadParseError("Missing Content-Type")
    ctype, params = parse_options_header(content_type)
    if ctype.lower() != b"multipart/form-data":
        raise UploadParseError("Unsupported Content-Type: expected multipart/form-data")
    boundary = params.get(b"boundary")
    if not boundary:
        raise UploadParseError("Missing multipart boundary")
    return boundary


async def read_upload(
    content_type: Optional[str],
    stream: AsyncIterator[bytes],
    dest: Path,
    max_file_bytes: int,
    max_field_bytes: int = MAX_FIELD_BYTES,
) -> UploadResult:
    """Stream a multipart body, writing the "file" part straight to `dest`.

    The whole stream is always consumed, even after the size ceiling is hit,
    so the client gets a normal 413 instead of a reset connection.
    Raises UploadParseError for anything that isn't a readable multipart body.
    """
    boundary = _boundary_from(content_type)
    collector = _UploadCollector(max_file_bytes, max_field_bytes)
    parser = MultipartParser(boundary, collector.callbacks())
    fh: Optional[BinaryIO] = None

    async def flush() -> None:
        nonlocal fh
        if not collector.got_file:
            return
        if fh is None:
            fh = await run_in_threadpool(open, dest, "wb")
        data = collector.take_pending()
        if data:
            await run_in_threadpool(fh.write, data)

    try:
        async for chunk in stream:
            parser.write(chunk)
            await flush()
        # finalize() doesn't complain about a missing closing boundary, so
        # check before calling it: a truncated body must never reach qpdf.
        if not (collector.complete or parser.state == MultipartState.END):
            raise MultipartParseError("unexpected end of form")
        parser.finalize()
        await flush()
    except MultipartParseError as e:
        logger.info("Rejected malformed multipart body: %s", e)
        raise UploadParseError(f"Malformed multipart body: {e}") from e
    except ClientDisconnect as e:
        logger.info("Client disconnected during upload")
        raise UploadParseError("Client disconnected during upload") from e
    finally:
        if fh is not None:
            await run_in_threadpool(fh.close)

    return UploadResult(
        password=collector.password,
        strength=collector.strength,
        got_file=collector.got_file,
        too_large=collector.too_large,
    )
