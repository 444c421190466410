"""
Conversion orchestration: intake -> compression -> assembly.

This module owns the per-request lifecycle of a conversion:
- Building a ConversionRequest from the parsed form
- Validating every upload before response headers are committed
- Streaming the document page by page in upload order
- Cancelling outstanding work when the client goes away

A ConversionJob is created for each request and is never shared. The only
process-wide resource is the ConversionService's compression thread pool,
which bounds how many images are recompressed at once across all requests.
"""

from __future__ import annotations

import asyncio
import logging
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from typing import AsyncIterator, Awaitable, Callable, Dict, List, Optional
from uuid import uuid4

from starlette.concurrency import run_in_threadpool

from .assembler import ChunkSink, DocumentAssembler, verify_image
from .compression import compress
from .errors import AssemblyError, ImageDecodeError, NoImagesError, StreamAbortedError
from .intake import ConversionForm, UploadedFile
from .models import CompressionLevel, ConversionState
from .utils import DEFAULT_FILENAME, sanitize_filename

logger = logging.getLogger(__name__)

PDF_MEDIA_TYPE = "application/pdf"

DisconnectCheck = Callable[[], Awaitable[bool]]


@dataclass
class ConversionRequest:
    """
    Ordered uploads plus the options that control their conversion.

    Attributes:
        files: Uploads in multipart arrival order; this is the page order
        compression_level: Recompression tier applied to every image
        filename: Requested download name, before sanitization
    """

    files: List[UploadedFile]
    compression_level: CompressionLevel = CompressionLevel.NORMAL
    filename: str = DEFAULT_FILENAME

    def __post_init__(self) -> None:
        if not self.files:
            raise NoImagesError()

    @classmethod
    def from_form(cls, form: ConversionForm) -> "ConversionRequest":
        return cls(
            files=list(form.files),
            compression_level=CompressionLevel.parse(form.fields.get("compressionLevel")),
            filename=form.fields.get("filename", DEFAULT_FILENAME),
        )

    @property
    def attachment_name(self) -> str:
        return f"{sanitize_filename(self.filename)}.pdf"

    @property
    def total_bytes(self) -> int:
        return sum(upload.size for upload in self.files)


class ConversionJob:
    """
    Drives one request through RECEIVED -> VALIDATED -> STREAMING -> COMPLETE.

    Any failure moves the job to FAILED. Before ``stream()`` starts, failures
    surface as exceptions the HTTP layer turns into JSON errors; once
    streaming, they abort the stream and no trailer is written.
    """

    def __init__(self, request: ConversionRequest, executor: ThreadPoolExecutor) -> None:
        self.id = uuid4().hex[:8]
        self.request = request
        self.state = ConversionState.RECEIVED
        self.pages_written = 0
        self._executor = executor
        self._started_at = time.monotonic()

    @property
    def media_type(self) -> str:
        return PDF_MEDIA_TYPE

    @property
    def response_headers(self) -> Dict[str, str]:
        return {"Content-Disposition": f'attachment; filename="{self.request.attachment_name}"'}

    def _transition(self, state: ConversionState) -> None:
        logger.debug(f"[{self.id}] {self.state.value} -> {state.value}")
        self.state = state

    def validate(self) -> None:
        """
        Check that every upload decodes as an image.

        Runs before headers are committed so that undecodable files, including
        ones with an intact header and a truncated body, produce a proper
        error response instead of a broken document. Blocking; call it from a
        worker thread.

        Raises:
            AssemblyError: If any upload cannot be decoded
        """
        if self.state is not ConversionState.RECEIVED:
            raise RuntimeError(f"Cannot validate a job in state {self.state.value}")
        for index, upload in enumerate(self.request.files):
            try:
                verify_image(upload.data)
            except ImageDecodeError as exc:
                self._transition(ConversionState.FAILED)
                logger.warning(f"[{self.id}] Image {index + 1} ({upload.filename}) cannot be opened: {exc}")
                raise AssemblyError(f"Unable to read image '{upload.filename}'") from exc
        self._transition(ConversionState.VALIDATED)
        logger.info(
            f"[{self.id}] Converting {len(self.request.files)} images "
            f"({self.request.total_bytes} bytes, level={self.request.compression_level.value}) "
            f"to {self.request.attachment_name}"
        )

    async def stream(self, is_disconnected: Optional[DisconnectCheck] = None) -> AsyncIterator[bytes]:
        """
        Produce the PDF as a sequence of byte chunks.

        Compression of all images is submitted up front and may run ahead on
        the worker pool; pages are still assembled strictly in upload order.

        Args:
            is_disconnected: Polled before each page; when it returns True
                production stops and pending work is cancelled
        """
        if self.state is not ConversionState.VALIDATED:
            raise RuntimeError(f"Cannot stream a job in state {self.state.value}")
        self._transition(ConversionState.STREAMING)

        level = self.request.compression_level
        sink = ChunkSink()
        document = DocumentAssembler(sink)
        futures: List[Optional[Future]] = []
        try:
            futures.extend(
                self._executor.submit(compress, upload.data, level, upload.filename) for upload in self.request.files
            )
            yield sink.drain()
            for index, future in enumerate(futures):
                if is_disconnected is not None and await is_disconnected():
                    logger.info(f"[{self.id}] Client disconnected after {self.pages_written} pages")
                    self._transition(ConversionState.FAILED)
                    return
                data = await asyncio.wrap_future(future)
                try:
                    await run_in_threadpool(document.add_image, data)
                except ImageDecodeError as exc:
                    upload = self.request.files[index]
                    raise AssemblyError(f"Unable to add image '{upload.filename}': {exc}") from exc
                futures[index] = None
                self.pages_written += 1
                chunk = sink.drain()
                if chunk:
                    yield chunk

            document.finalize()
            yield sink.drain()
            self._transition(ConversionState.COMPLETE)
            logger.info(
                f"[{self.id}] Completed {document.page_count} pages in {time.monotonic() - self._started_at:.2f}s"
            )
        except Exception as exc:
            self._transition(ConversionState.FAILED)
            logger.error(f"[{self.id}] Conversion aborted after {self.pages_written} pages: {exc}")
            raise StreamAbortedError(f"Conversion aborted after {self.pages_written} pages") from exc
        finally:
            for future in futures:
                if future is not None:
                    future.cancel()
            futures.clear()
            if self.state is ConversionState.STREAMING:
                # Closed by the consumer before completion
                self._transition(ConversionState.FAILED)
            self.request.files.clear()


class ConversionService:
    """
    Creates conversion jobs and owns the shared compression pool.

    Attributes:
        max_workers: Number of images recompressed concurrently, process-wide
    """

    def __init__(self, max_workers: int = 2) -> None:
        self.max_workers = max_workers
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="compress")

    def open_job(self, form: ConversionForm) -> ConversionJob:
        """
        Build a job for a parsed form.

        Raises:
            NoImagesError: If the form carries no files
        """
        return ConversionJob(ConversionRequest.from_form(form), self._executor)

    async def validate(self, job: ConversionJob) -> None:
        """Run ``job.validate()`` on the worker pool and wait for it."""
        await asyncio.wrap_future(self._executor.submit(job.validate))

    def shutdown(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)
