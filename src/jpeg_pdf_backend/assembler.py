"""
Incremental PDF assembly.

A DocumentAssembler writes a PDF to a Sink as pages are added: the header on
creation, then the image, content stream and page objects of each page as
soon as that page is added, and finally the page tree, catalog, cross
reference table and trailer. Nothing but the object offsets is kept once a
page has been written, so memory use does not grow with the document.

Each page is sized to its image in points (one pixel per point) and the image
is drawn at the origin, filling the page. JPEG data is embedded unchanged
with DCTDecode; other formats are decoded with Pillow and embedded with
FlateDecode.

A document that is abandoned before finalize() has no trailer and is not a
valid PDF.
"""

from __future__ import annotations

import logging
import zlib
from dataclasses import dataclass
from io import BytesIO
from typing import Dict, List, Optional, Protocol, Tuple

from PIL import Image

from .errors import DocumentFinalizedError, ImageDecodeError
from .utils import normalize_mode

logger = logging.getLogger(__name__)

PDF_HEADER = b"%PDF-1.4\n%\xe2\xe3\xcf\xd3\n"

COLOR_SPACES = {"L": "/DeviceGray", "RGB": "/DeviceRGB", "CMYK": "/DeviceCMYK"}

# Adobe CMYK JPEGs store inverted samples
CMYK_DECODE = "[1 0 1 0 1 0 1 0]"


class Sink(Protocol):
    """Destination for serialized document bytes."""

    def write(self, data: bytes) -> None:
        ...

    def close(self) -> None:
        ...


class BufferSink:
    """Collects the whole document in memory."""

    def __init__(self) -> None:
        self._buffer = BytesIO()
        self.closed = False

    def write(self, data: bytes) -> None:
        if self.closed:
            raise ValueError("write to closed sink")
        self._buffer.write(data)

    def close(self) -> None:
        self.closed = True

    def getvalue(self) -> bytes:
        return self._buffer.getvalue()


class ChunkSink:
    """Holds written bytes until the response stream drains them."""

    def __init__(self) -> None:
        self._chunks: List[bytes] = []
        self.closed = False

    def write(self, data: bytes) -> None:
        if self.closed:
            raise ValueError("write to closed sink")
        self._chunks.append(data)

    def close(self) -> None:
        self.closed = True

    def drain(self) -> bytes:
        data = b"".join(self._chunks)
        self._chunks.clear()
        return data


@dataclass(frozen=True)
class PdfImage:
    width: int
    height: int
    data: bytes
    filter: str
    color_space: str
    decode: Optional[str] = None


def verify_image(buffer: bytes) -> Tuple[int, int]:
    """
    Fully decode an image to prove its pixel data is intact.

    Returns:
        The image's (width, height)

    Raises:
        ImageDecodeError: If the data cannot be identified or decoded
    """
    try:
        with Image.open(BytesIO(buffer)) as image:
            image.load()
            return image.size
    except (OSError, SyntaxError, ValueError, Image.DecompressionBombError) as exc:
        raise ImageDecodeError(f"Unable to decode image: {exc}") from exc


def open_image(buffer: bytes) -> PdfImage:
    """
    Prepare image bytes for embedding and read their intrinsic size.

    Raises:
        ImageDecodeError: If the data is not a decodable image
    """
    try:
        with Image.open(BytesIO(buffer)) as image:
            width, height = image.size
            # Decode even when the JPEG bytes are passed through unchanged
            image.load()
            if image.format == "JPEG" and image.mode in COLOR_SPACES:
                return PdfImage(
                    width=width,
                    height=height,
                    data=bytes(buffer),
                    filter="/DCTDecode",
                    color_space=COLOR_SPACES[image.mode],
                    decode=CMYK_DECODE if image.mode == "CMYK" else None,
                )
            flat = normalize_mode(image)
            return PdfImage(
                width=width,
                height=height,
                data=zlib.compress(flat.tobytes()),
                filter="/FlateDecode",
                color_space=COLOR_SPACES[flat.mode],
            )
    except (OSError, SyntaxError, ValueError, Image.DecompressionBombError) as exc:
        raise ImageDecodeError(f"Unable to open image: {exc}") from exc


class DocumentAssembler:
    """
    Builds a PDF page by page into a Sink.

    Object numbers 1 and 2 are reserved for the catalog and the page tree,
    which can only be written once every page is known.
    """

    CATALOG_ID = 1
    PAGES_ID = 2

    def __init__(self, sink: Sink) -> None:
        self._sink = sink
        self._offset = 0
        self._offsets: Dict[int, int] = {}
        self._next_id = 3
        self._page_ids: List[int] = []
        self._finalized = False
        self._write(PDF_HEADER)

    @property
    def page_count(self) -> int:
        return len(self._page_ids)

    @property
    def finalized(self) -> bool:
        return self._finalized

    def add_image(self, buffer: bytes) -> PdfImage:
        """Open ``buffer`` and append it as a new page."""
        self._ensure_open()
        image = open_image(buffer)
        self.add_page(image)
        return image

    def add_page(self, image: PdfImage) -> int:
        """
        Append a page sized to ``image`` and draw the image over all of it.

        Returns:
            The zero-based index of the new page
        """
        self._ensure_open()
        image_dict = (
            f"<< /Type /XObject /Subtype /Image /Width {image.width} /Height {image.height} "
            f"/ColorSpace {image.color_space} /BitsPerComponent 8 /Filter {image.filter} "
        )
        if image.decode:
            image_dict += f"/Decode {image.decode} "
        image_dict += f"/Length {len(image.data)} >>"
        image_id = self._write_object(image_dict, image.data)

        content = f"q\n{image.width} 0 0 {image.height} 0 0 cm\n/Im0 Do\nQ\n".encode("ascii")
        content_id = self._write_object(f"<< /Length {len(content)} >>", content)

        page_id = self._write_object(
            f"<< /Type /Page /Parent {self.PAGES_ID} 0 R /MediaBox [0 0 {image.width} {image.height}] "
            f"/Resources << /XObject << /Im0 {image_id} 0 R >> >> /Contents {content_id} 0 R >>"
        )
        self._page_ids.append(page_id)
        return len(self._page_ids) - 1

    def finalize(self) -> None:
        """Write the page tree, catalog and trailer, then close the sink."""
        self._ensure_open()
        kids = " ".join(f"{page_id} 0 R" for page_id in self._page_ids)
        self._write_object(
            f"<< /Type /Pages /Kids [{kids}] /Count {len(self._page_ids)} >>",
            object_id=self.PAGES_ID,
        )
        self._write_object(f"<< /Type /Catalog /Pages {self.PAGES_ID} 0 R >>", object_id=self.CATALOG_ID)

        xref_offset = self._offset
        size = self._next_id
        xref = [f"xref\n0 {size}\n", "0000000000 65535 f \n"]
        xref.extend(f"{self._offsets[object_id]:010d} 00000 n \n" for object_id in range(1, size))
        xref.append(f"trailer\n<< /Size {size} /Root {self.CATALOG_ID} 0 R >>\nstartxref\n{xref_offset}\n%%EOF\n")
        self._write("".join(xref).encode("ascii"))

        self._finalized = True
        self._sink.close()
        logger.debug(f"Finalized document with {len(self._page_ids)} pages ({self._offset} bytes)")

    def _ensure_open(self) -> None:
        if self._finalized:
            raise DocumentFinalizedError()

    def _write(self, data: bytes) -> None:
        self._sink.write(data)
        self._offset += len(data)

    def _write_object(self, dictionary: str, stream: Optional[bytes] = None, object_id: Optional[int] = None) -> int:
        if object_id is None:
            object_id = self._next_id
            self._next_id += 1
        self._offsets[object_id] = self._offset
        parts = [f"{object_id} 0 obj\n{dictionary}\n".encode("ascii")]
        if stream is not None:
            parts.extend([b"stream\n", stream, b"\nendstream\n"])
        parts.append(b"endobj\n")
        self._write(b"".join(parts))
        return object_id
