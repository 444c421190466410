"""
Pytest configuration and fixtures for the JPEG to PDF backend tests.
"""

import os
from io import BytesIO

import pytest
from fastapi.testclient import TestClient
from PIL import Image

# Keep the test run independent of a developer's environment
for name in ("HOST", "PORT", "APP_ENV", "LOG_LEVEL", "MAX_FILE_SIZE", "MAX_FILES", "COMPRESSION_WORKERS"):
    os.environ.pop(name, None)

from jpeg_pdf_backend.configuration import make_runtime_config
from jpeg_pdf_backend.main import create_app


def _encode(image, format, **params):
    buffer = BytesIO()
    image.save(buffer, format=format, **params)
    return buffer.getvalue()


@pytest.fixture(scope="session")
def make_jpeg():
    """Factory for solid-color JPEG bytes of a given size."""

    def factory(width, height, color=(200, 40, 40), quality=95):
        return _encode(Image.new("RGB", (width, height), color), "JPEG", quality=quality)

    return factory


@pytest.fixture(scope="session")
def make_noisy_jpeg():
    """Factory for JPEGs with noise, whose size depends strongly on quality."""

    def factory(width, height, quality=95):
        bands = [Image.effect_noise((width, height), 64) for _ in range(3)]
        return _encode(Image.merge("RGB", bands), "JPEG", quality=quality)

    return factory


@pytest.fixture(scope="session")
def make_png():
    """Factory for PNG bytes, RGBA by default."""

    def factory(width, height, mode="RGBA", color=(20, 120, 220, 128)):
        return _encode(Image.new(mode, (width, height), color), "PNG")

    return factory


@pytest.fixture
def runtime_config():
    return make_runtime_config({"pipeline": {"compression_workers": 2}})


@pytest.fixture
def app(runtime_config):
    application = create_app(runtime_config)
    yield application
    application.state.conversion_service.shutdown()


@pytest.fixture
def client(app):
    """Create a test client for the FastAPI app."""
    return TestClient(app)
