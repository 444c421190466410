"""
Error taxonomy for the conversion pipeline.

Every error that can be reported to a client derives from ConversionError and
knows its HTTP status and JSON body. Errors raised after the response headers
have been sent cannot be reported this way; the stream is cut short instead.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class ConversionError(Exception):
    """Base class for errors mapped to a structured JSON response."""

    status_code = 500
    default_message = "Conversion failed"

    def __init__(self, message: Optional[str] = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)

    def to_content(self) -> Dict[str, Any]:
        return {"error": "Conversion failed", "message": self.message}


class IntakeError(ConversionError):
    """Bad input shape, detected before any processing starts."""

    status_code = 400
    default_message = "Invalid upload"

    def to_content(self) -> Dict[str, Any]:
        return {"error": self.message}


class NoImagesError(IntakeError):
    default_message = "No images provided"


class FileTooLargeError(IntakeError):
    default_message = "File too large"


class TooManyFilesError(IntakeError):
    default_message = "Too many files"


class UnsupportedMediaTypeError(IntakeError):
    default_message = "Only image files are allowed"


class UnexpectedFieldError(IntakeError):
    default_message = "Unexpected file field"


class FieldTooLargeError(IntakeError):
    default_message = "Form field too large"


class MalformedRequestError(IntakeError):
    default_message = "Malformed multipart body"


class AssemblyError(ConversionError):
    """An image could not be placed into the document; fatal for the request."""


class ImageDecodeError(AssemblyError):
    pass


class DocumentFinalizedError(AssemblyError):
    default_message = "Document has already been finalized"


class StreamAbortedError(Exception):
    """
    Raised out of a response stream whose headers were already sent.

    Not a ConversionError, so no JSON handler maps it and the server
    aborts the connection.
    """
