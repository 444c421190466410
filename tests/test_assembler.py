"""
Tests for the incremental PDF writer and its sinks.
"""

from io import BytesIO

import pytest
from PIL import Image
from pypdf import PdfReader

from jpeg_pdf_backend.assembler import BufferSink, ChunkSink, DocumentAssembler, open_image, verify_image
from jpeg_pdf_backend.errors import DocumentFinalizedError, ImageDecodeError


def _build(*buffers):
    sink = BufferSink()
    document = DocumentAssembler(sink)
    for buffer in buffers:
        document.add_image(buffer)
    document.finalize()
    return sink.getvalue()


class TestDocumentAssembler:
    def test_pages_match_image_sizes(self, make_jpeg):
        pdf = _build(make_jpeg(800, 600), make_jpeg(1200, 900), make_jpeg(400, 400))
        reader = PdfReader(BytesIO(pdf), strict=True)

        assert len(reader.pages) == 3
        sizes = [(float(page.mediabox.width), float(page.mediabox.height)) for page in reader.pages]
        assert sizes == [(800.0, 600.0), (1200.0, 900.0), (400.0, 400.0)]

    def test_image_fills_page_from_origin(self, make_jpeg):
        pdf = _build(make_jpeg(300, 200))
        page = PdfReader(BytesIO(pdf)).pages[0]
        assert page.get_contents().get_data().split() == [b"q", b"300", b"0", b"0", b"200", b"0", b"0", b"cm", b"/Im0", b"Do", b"Q"]

    def test_jpeg_is_embedded_unchanged(self, make_jpeg):
        original = make_jpeg(64, 64)
        page = PdfReader(BytesIO(_build(original))).pages[0]
        image = page["/Resources"]["/XObject"]["/Im0"]
        assert image["/Filter"] == "/DCTDecode"
        assert image["/ColorSpace"] == "/DeviceRGB"
        assert image.get_data() == original

    def test_png_is_decoded_and_flattened(self, make_png):
        page = PdfReader(BytesIO(_build(make_png(50, 20)))).pages[0]
        image = page["/Resources"]["/XObject"]["/Im0"]
        assert image["/Filter"] == "/FlateDecode"
        assert page.images[0].image.size == (50, 20)

    def test_grayscale_jpeg(self):
        buffer = BytesIO()
        Image.new("L", (20, 10), 90).save(buffer, format="JPEG")
        image = open_image(buffer.getvalue())
        assert image.color_space == "/DeviceGray"
        assert (image.width, image.height) == (20, 10)

    def test_no_page_before_first_image(self):
        sink = BufferSink()
        document = DocumentAssembler(sink)
        assert document.page_count == 0
        assert sink.getvalue().startswith(b"%PDF-1.4")
        assert b"/Type /Page" not in sink.getvalue()

    def test_unfinalized_document_has_no_trailer(self, make_jpeg):
        sink = BufferSink()
        document = DocumentAssembler(sink)
        document.add_image(make_jpeg(10, 10))
        assert b"%%EOF" not in sink.getvalue()
        assert not sink.closed

    def test_finalize_closes_sink_and_blocks_further_pages(self, make_jpeg):
        sink = BufferSink()
        document = DocumentAssembler(sink)
        document.add_image(make_jpeg(10, 10))
        document.finalize()

        assert sink.closed
        assert document.finalized
        with pytest.raises(DocumentFinalizedError):
            document.add_image(make_jpeg(10, 10))
        with pytest.raises(DocumentFinalizedError):
            document.finalize()

    def test_pages_are_written_as_they_are_added(self, make_jpeg):
        sink = ChunkSink()
        document = DocumentAssembler(sink)
        header = sink.drain()
        document.add_image(make_jpeg(10, 10))
        first_page = sink.drain()

        assert header.startswith(b"%PDF-")
        assert b"/Type /Page " in first_page
        assert sink.drain() == b""


class TestOpenImage:
    def test_undecodable_data(self):
        with pytest.raises(ImageDecodeError):
            open_image(b"plain text, not pixels")

    def test_truncated_jpeg_is_not_passed_through(self, make_noisy_jpeg):
        good = make_noisy_jpeg(200, 200)
        with pytest.raises(ImageDecodeError):
            open_image(good[: len(good) // 2])


class TestVerifyImage:
    def test_returns_size(self, make_jpeg):
        assert verify_image(make_jpeg(33, 44)) == (33, 44)

    def test_rejects_garbage(self):
        with pytest.raises(ImageDecodeError):
            verify_image(b"\x00" * 32)

    def test_rejects_truncated_body(self, make_noisy_jpeg):
        good = make_noisy_jpeg(200, 200)
        truncated = good[: len(good) // 2]
        # Header alone still identifies the image
        assert Image.open(BytesIO(truncated)).size == (200, 200)
        with pytest.raises(ImageDecodeError):
            verify_image(truncated)
