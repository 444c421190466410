from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Dict, Optional

from pydantic import BaseModel


class CompressionLevel(str, Enum):
    NORMAL = "normal"
    COMPRESSED = "compressed"
    ULTRA = "ultra"

    @classmethod
    def parse(cls, value: Optional[str]) -> "CompressionLevel":
        """Unrecognized or missing tiers fall back to NORMAL."""
        try:
            return cls((value or "").strip().lower())
        except ValueError:
            return cls.NORMAL


class ConversionState(str, Enum):
    RECEIVED = "received"
    VALIDATED = "validated"
    STREAMING = "streaming"
    COMPLETE = "complete"
    FAILED = "failed"


class ServiceInfo(BaseModel):
    message: str
    version: str
    architecture: str
    endpoints: Dict[str, str]


class HealthStatus(BaseModel):
    status: str
    timestamp: datetime
    uptime: float
    architecture: str


class ErrorResponse(BaseModel):
    error: str
    message: Optional[str] = None
