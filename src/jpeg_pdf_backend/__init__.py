"""
JPEG to PDF Converter Backend - REST API for image to PDF conversion

This package provides a FastAPI-based web service that turns a batch of
uploaded images into a single PDF, one full-bleed page per image. It enables:

- Multipart image uploads validated and buffered entirely in memory
- Optional recompression at one of three quality tiers
- PDF output streamed to the client page by page
- Structured JSON errors for anything rejected before streaming starts

Key Components:
    - main: FastAPI application and HTTP endpoint definitions
    - intake: Multipart parsing and upload limits
    - compression: Quality tiers and best-effort JPEG recompression
    - assembler: Incremental PDF writer and output sinks
    - converter: Per-request pipeline and the shared compression pool
    - configuration: Config loading and merging logic
    - errors: Error taxonomy mapped to HTTP responses
    - models: Enums and Pydantic response models
    - utils: Filename and image-mode helpers

Usage:
    Run the API server with:
        uvicorn jpeg_pdf_backend.main:app --reload --host 0.0.0.0 --port 3000

    Or use the installed script:
        jpeg-pdf-backend

Architecture Principles:
    - No persistence: uploads and output never touch the disk
    - Page order always matches upload order
    - A bad image degrades to its original bytes instead of failing the batch
    - Once the PDF headers are sent, failures only cut the stream short
"""
