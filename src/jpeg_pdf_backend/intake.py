"""
Multipart upload intake.

The request body is parsed directly off the ASGI stream with python-multipart
and every part is buffered in memory. Limits are enforced while the body is
still arriving, so an oversized file or an extra part fails the request
before the rest of the body is read. Nothing is spooled to disk.

A rejected part rejects the whole batch: the partially built form is dropped
together with any files buffered so far.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import AsyncIterator, Dict, List, Optional, Tuple

from omegaconf import DictConfig
from python_multipart.exceptions import MultipartParseError
from python_multipart.multipart import MultipartParser, parse_options_header

from .errors import (
    FieldTooLargeError,
    FileTooLargeError,
    MalformedRequestError,
    TooManyFilesError,
    UnexpectedFieldError,
    UnsupportedMediaTypeError,
)
from .utils import human_size

logger = logging.getLogger(__name__)


@dataclass
class UploadedFile:
    data: bytes
    content_type: str
    filename: str

    @property
    def size(self) -> int:
        return len(self.data)


@dataclass
class ConversionForm:
    """Parsed form: files in arrival order plus the text fields."""

    files: List[UploadedFile] = field(default_factory=list)
    fields: Dict[str, str] = field(default_factory=dict)


@dataclass
class _Part:
    headers: Dict[bytes, bytes] = field(default_factory=dict)
    name: str = ""
    filename: Optional[str] = None
    content_type: str = ""
    buffer: bytearray = field(default_factory=bytearray)
    skip: bool = False

    @property
    def is_file(self) -> bool:
        return self.filename is not None


class UploadIntake:
    """
    Validates and buffers multipart uploads.

    Attributes:
        max_file_size: Largest accepted file part, in bytes (inclusive)
        max_files: Largest accepted number of file parts (inclusive)
        max_field_size: Largest accepted text field, in bytes
        allowed_mime_prefix: Declared content types must start with this
        field_name: The only form field that may carry files
    """

    def __init__(
        self,
        max_file_size: int,
        max_files: int,
        max_field_size: int,
        allowed_mime_prefix: str = "image/",
        field_name: str = "images",
    ) -> None:
        self.max_file_size = max_file_size
        self.max_files = max_files
        self.max_field_size = max_field_size
        self.allowed_mime_prefix = allowed_mime_prefix
        self.field_name = field_name

    @classmethod
    def from_config(cls, limits: DictConfig) -> "UploadIntake":
        return cls(
            max_file_size=limits.max_file_size,
            max_files=limits.max_files,
            max_field_size=limits.max_field_size,
            allowed_mime_prefix=limits.allowed_mime_prefix,
            field_name=limits.field_name,
        )

    async def parse(self, content_type: Optional[str], stream: AsyncIterator[bytes]) -> ConversionForm:
        """
        Parse a request body into a ConversionForm.

        Args:
            content_type: The request's Content-Type header
            stream: Async iterator over the raw body chunks

        Returns:
            The parsed form; empty when the body is not multipart/form-data

        Raises:
            IntakeError: On the first violated limit or a malformed body
        """
        media_type, params = parse_options_header(content_type)
        if media_type != b"multipart/form-data":
            logger.debug(f"Ignoring non-multipart body ({media_type!r})")
            return ConversionForm()

        boundary = params.get(b"boundary")
        if not boundary:
            raise MalformedRequestError("Missing multipart boundary")

        reader = _FormReader(self, boundary)
        try:
            async for chunk in stream:
                if chunk:
                    reader.feed(chunk)
            reader.finish()
        except MultipartParseError as exc:
            raise MalformedRequestError(f"Malformed multipart body: {exc}") from exc
        return reader.form


class _FormReader:
    """Turns python-multipart callback events into a ConversionForm."""

    def __init__(self, intake: UploadIntake, boundary: bytes) -> None:
        self._intake = intake
        self._events: List[Tuple[str, bytes]] = []
        self._part = _Part()
        self._header_field = b""
        self._header_value = b""
        self.form = ConversionForm()
        self._parser = MultipartParser(
            boundary,
            callbacks={
                "on_part_begin": lambda: self._events.append(("part_begin", b"")),
                "on_part_data": self._on_data("part_data"),
                "on_part_end": lambda: self._events.append(("part_end", b"")),
                "on_header_field": self._on_data("header_field"),
                "on_header_value": self._on_data("header_value"),
                "on_header_end": lambda: self._events.append(("header_end", b"")),
                "on_headers_finished": lambda: self._events.append(("headers_finished", b"")),
            },
        )

    def _on_data(self, name: str):
        def callback(data: bytes, start: int, end: int) -> None:
            self._events.append((name, data[start:end]))

        return callback

    def feed(self, chunk: bytes) -> None:
        self._parser.write(chunk)
        self._drain()

    def finish(self) -> None:
        self._parser.finalize()
        self._drain()

    def _drain(self) -> None:
        events, self._events = self._events, []
        for event, payload in events:
            if event == "part_begin":
                self._part = _Part()
                self._header_field = b""
                self._header_value = b""
            elif event == "header_field":
                self._header_field += payload
            elif event == "header_value":
                self._header_value += payload
            elif event == "header_end":
                self._part.headers[self._header_field.lower()] = self._header_value
                self._header_field = b""
                self._header_value = b""
            elif event == "headers_finished":
                self._open_part()
            elif event == "part_data":
                self._append(payload)
            elif event == "part_end":
                self._close_part()

    def _open_part(self) -> None:
        part = self._part
        intake = self._intake
        _, options = parse_options_header(part.headers.get(b"content-disposition"))
        part.name = options.get(b"name", b"").decode("utf-8", errors="replace")
        filename = options.get(b"filename")
        if filename is None:
            return

        part.filename = filename.decode("utf-8", errors="replace")
        if part.name != intake.field_name:
            raise UnexpectedFieldError(f"Unexpected file field '{part.name}'")
        if not part.filename:
            # Empty file input submitted by a browser form
            part.skip = True
            return

        if len(self.form.files) >= intake.max_files:
            logger.warning(f"Rejecting upload: more than {intake.max_files} files")
            raise TooManyFilesError(f"Too many files. Maximum is {intake.max_files} files.")

        part.content_type = part.headers.get(b"content-type", b"").decode("latin-1").strip().lower()
        if not part.content_type.startswith(intake.allowed_mime_prefix):
            logger.warning(f"Rejecting upload: {part.filename} has content type '{part.content_type}'")
            raise UnsupportedMediaTypeError("Only image files are allowed")

    def _append(self, data: bytes) -> None:
        part = self._part
        if part.skip:
            return
        limit = self._intake.max_file_size if part.is_file else self._intake.max_field_size
        if len(part.buffer) + len(data) > limit:
            if part.is_file:
                logger.warning(f"Rejecting upload: {part.filename} exceeds {limit} bytes")
                raise FileTooLargeError(f"File too large. Maximum size is {human_size(limit)}.")
            raise FieldTooLargeError(f"Field '{part.name}' too large. Maximum size is {human_size(limit)}.")
        part.buffer.extend(data)

    def _close_part(self) -> None:
        part = self._part
        if part.skip:
            return
        if part.is_file:
            self.form.files.append(
                UploadedFile(data=bytes(part.buffer), content_type=part.content_type, filename=part.filename or "")
            )
        else:
            self.form.fields[part.name] = part.buffer.decode("utf-8", errors="replace")
        self._part = _Part()
