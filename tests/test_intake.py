"""
Tests for multipart intake: limits, ordering and rejection policy.
"""

import asyncio

import httpx
import pytest

from jpeg_pdf_backend.errors import (
    FieldTooLargeError,
    FileTooLargeError,
    MalformedRequestError,
    TooManyFilesError,
    UnexpectedFieldError,
    UnsupportedMediaTypeError,
)
from jpeg_pdf_backend.intake import UploadIntake


@pytest.fixture
def intake():
    return UploadIntake(max_file_size=1000, max_files=3, max_field_size=64)


def _encode(files=None, data=None):
    request = httpx.Request("POST", "http://testserver/convert", files=files, data=data)
    return request.headers["content-type"], request.read()


async def _chunks(body, size):
    for start in range(0, len(body), size):
        yield body[start : start + size]


def _parse(intake, files=None, data=None, chunk_size=7):
    content_type, body = _encode(files, data)
    return asyncio.run(intake.parse(content_type, _chunks(body, chunk_size)))


class TestIntakeParsing:
    def test_files_keep_arrival_order(self, intake):
        form = _parse(
            intake,
            files=[
                ("images", ("c.png", b"third" * 3, "image/png")),
                ("images", ("a.jpg", b"first", "image/jpeg")),
                ("images", ("b.gif", b"second!", "image/gif")),
            ],
        )
        assert [upload.filename for upload in form.files] == ["c.png", "a.jpg", "b.gif"]
        assert [upload.data for upload in form.files] == [b"third" * 3, b"first", b"second!"]
        assert [upload.content_type for upload in form.files] == ["image/png", "image/jpeg", "image/gif"]
        assert form.files[0].size == 15

    def test_text_fields(self, intake):
        form = _parse(
            intake,
            files=[("images", ("a.jpg", b"x", "image/jpeg"))],
            data={"compressionLevel": "ultra", "filename": "My Report!"},
        )
        assert form.fields == {"compressionLevel": "ultra", "filename": "My Report!"}

    def test_non_multipart_body_yields_empty_form(self, intake):
        async def body():
            yield b'{"images": []}'

        form = asyncio.run(intake.parse("application/json", body()))
        assert form.files == []
        assert form.fields == {}

    def test_missing_boundary(self, intake):
        async def body():
            yield b""

        with pytest.raises(MalformedRequestError):
            asyncio.run(intake.parse("multipart/form-data", body()))

    def test_empty_browser_file_input_is_skipped(self, intake):
        form = _parse(
            intake,
            files=[
                ("images", ("", b"", "application/octet-stream")),
                ("images", ("a.jpg", b"x", "image/jpeg")),
            ],
        )
        assert [upload.filename for upload in form.files] == ["a.jpg"]


class TestIntakeLimits:
    def test_file_at_limit_is_accepted(self, intake):
        form = _parse(intake, files=[("images", ("a.jpg", b"x" * 1000, "image/jpeg"))])
        assert form.files[0].size == 1000

    def test_file_over_limit_is_rejected(self, intake):
        with pytest.raises(FileTooLargeError):
            _parse(intake, files=[("images", ("a.jpg", b"x" * 1001, "image/jpeg"))])

    def test_file_count_at_limit_is_accepted(self, intake):
        form = _parse(intake, files=[("images", (f"{i}.jpg", b"x", "image/jpeg")) for i in range(3)])
        assert len(form.files) == 3

    def test_file_count_over_limit_is_rejected(self, intake):
        with pytest.raises(TooManyFilesError) as excinfo:
            _parse(intake, files=[("images", (f"{i}.jpg", b"x", "image/jpeg")) for i in range(4)])
        assert excinfo.value.message == "Too many files. Maximum is 3 files."

    def test_size_and_count_errors_are_distinct(self):
        assert not issubclass(FileTooLargeError, TooManyFilesError)
        assert not issubclass(TooManyFilesError, FileTooLargeError)

    def test_non_image_rejects_batch(self, intake):
        with pytest.raises(UnsupportedMediaTypeError):
            _parse(
                intake,
                files=[
                    ("images", ("a.jpg", b"x", "image/jpeg")),
                    ("images", ("b.pdf", b"y", "application/pdf")),
                ],
            )

    def test_file_under_other_field_is_rejected(self, intake):
        with pytest.raises(UnexpectedFieldError):
            _parse(intake, files=[("photo", ("a.jpg", b"x", "image/jpeg"))])

    def test_oversized_text_field(self, intake):
        with pytest.raises(FieldTooLargeError):
            _parse(intake, files=[("images", ("a.jpg", b"x", "image/jpeg"))], data={"filename": "n" * 65})

    def test_single_chunk_body(self, intake):
        form = _parse(intake, files=[("images", ("a.jpg", b"x" * 500, "image/jpeg"))], chunk_size=10_000)
        assert form.files[0].size == 500
