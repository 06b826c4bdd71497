"""Validated job descriptions, one model per job kind.

Numeric options are clamped into the supported range rather than rejected;
an unparseable number falls back to its default. Missing content, a bad URL
or an unknown enum value is an invalid request.
"""
from __future__ import annotations

import ipaddress
from typing import Any, Dict, Literal, Mapping, Optional, Union
from urllib.parse import urlsplit

from pydantic import BaseModel, Field, ValidationError, field_validator

from .errors import InvalidRequest

BLOCKED_HOSTNAMES = {"localhost", "0.0.0.0", "::1", "metadata.google.internal"}
WAIT_UNTIL_VALUES = {"load", "domcontentloaded", "networkidle0", "networkidle2"}


def _as_int(value: Any, default: int) -> int:
    if value is None or value == "":
        return default
    if isinstance(value, bool):
        return default
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return default


def clamp(value: Any, default: int, low: int, high: int) -> int:
    return min(max(_as_int(value, default), low), high)


def as_bool(value: Any, default: bool = False) -> bool:
    if value is None or value == "":
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in {"true", "1", "yes", "on"}
    return bool(value)


def ensure_public_url(url: str) -> str:
    parts = urlsplit(url)
    if parts.scheme not in ("http", "https"):
        raise ValueError("Only http and https URLs are supported")
    hostname = (parts.hostname or "").lower()
    if not hostname:
        raise ValueError("Invalid URL format")
    if hostname in BLOCKED_HOSTNAMES:
        raise ValueError("Cannot capture internal/private URLs")
    try:
        address = ipaddress.ip_address(hostname)
    except ValueError:
        return url
    if address.is_private or address.is_loopback or address.is_link_local or address.is_unspecified:
        raise ValueError("Cannot capture internal/private URLs")
    return url


class CaptureJob(BaseModel):
    kind: Literal["capture"] = "capture"
    url: str = Field(min_length=1, max_length=4096)
    format: Literal["png", "jpeg", "pdf"] = "png"
    width: int = 1280
    height: int = 800
    full_page: bool = False
    delay: int = 0
    quality: int = 80
    paper_size: str = Field(default="A4", max_length=32)
    landscape: bool = False
    print_background: bool = True
    wait_until: str = "networkidle2"
    timeout: int = 30000
    user_agent: Optional[str] = Field(default=None, max_length=512)

    @field_validator("url")
    @classmethod
    def validate_url(cls, value: str) -> str:
        return ensure_public_url(value.strip())

    @field_validator("width", mode="before")
    @classmethod
    def clamp_width(cls, value: Any) -> int:
        return clamp(value, 1280, 320, 3840)

    @field_validator("height", mode="before")
    @classmethod
    def clamp_height(cls, value: Any) -> int:
        return clamp(value, 800, 200, 2160)

    @field_validator("delay", mode="before")
    @classmethod
    def clamp_delay(cls, value: Any) -> int:
        return clamp(value, 0, 0, 10000)

    @field_validator("quality", mode="before")
    @classmethod
    def clamp_quality(cls, value: Any) -> int:
        return clamp(value, 80, 1, 100)

    @field_validator("timeout", mode="before")
    @classmethod
    def clamp_timeout(cls, value: Any) -> int:
        return clamp(value, 30000, 5000, 60000)

    @field_validator("full_page", "landscape", mode="before")
    @classmethod
    def parse_flag(cls, value: Any) -> bool:
        return as_bool(value)

    @field_validator("print_background", mode="before")
    @classmethod
    def parse_print_background(cls, value: Any) -> bool:
        return as_bool(value, default=True)

    @field_validator("wait_until", mode="before")
    @classmethod
    def validate_wait_until(cls, value: Any) -> str:
        if value is None or value == "":
            return "networkidle2"
        if value not in WAIT_UNTIL_VALUES:
            raise ValueError(f"wait_until must be one of {sorted(WAIT_UNTIL_VALUES)}")
        return value

    @property
    def media_type(self) -> str:
        if self.format == "pdf":
            return "application/pdf"
        return f"image/{self.format}"


class Margins(BaseModel):
    top: str = Field(default="20mm", max_length=16)
    bottom: str = Field(default="20mm", max_length=16)
    left: str = Field(default="15mm", max_length=16)
    right: str = Field(default="15mm", max_length=16)


class MarkdownPdfJob(BaseModel):
    kind: Literal["md2pdf"] = "md2pdf"
    markdown: str = Field(min_length=1, max_length=1024 * 1024)
    theme: Literal["light", "dark"] = "light"
    paper_size: str = Field(default="A4", max_length=32)
    landscape: bool = False
    font_size: Optional[str] = Field(default=None, max_length=16)
    margins: Margins = Field(default_factory=Margins)

    @field_validator("theme", mode="before")
    @classmethod
    def normalize_theme(cls, value: Any) -> str:
        return "dark" if value == "dark" else "light"

    @field_validator("landscape", mode="before")
    @classmethod
    def parse_landscape(cls, value: Any) -> bool:
        return as_bool(value)

    @property
    def media_type(self) -> str:
        return "application/pdf"


class MarkdownImageJob(BaseModel):
    kind: Literal["md2png"] = "md2png"
    markdown: str = Field(min_length=1, max_length=1024 * 1024)
    theme: Literal["light", "dark"] = "light"
    format: Literal["png", "jpeg"] = "png"
    width: int = 1280
    font_size: Optional[str] = Field(default=None, max_length=16)
    quality: int = 85

    @field_validator("theme", mode="before")
    @classmethod
    def normalize_theme(cls, value: Any) -> str:
        return "dark" if value == "dark" else "light"

    @field_validator("format", mode="before")
    @classmethod
    def normalize_format(cls, value: Any) -> str:
        return "jpeg" if value == "jpeg" else "png"

    @field_validator("width", mode="before")
    @classmethod
    def clamp_width(cls, value: Any) -> int:
        return clamp(value, 1280, 320, 3840)

    @field_validator("quality", mode="before")
    @classmethod
    def clamp_quality(cls, value: Any) -> int:
        return clamp(value, 85, 1, 100)

    @property
    def media_type(self) -> str:
        return f"image/{self.format}"


class MarkdownHtmlJob(BaseModel):
    kind: Literal["md2html"] = "md2html"
    markdown: str = Field(min_length=1, max_length=1024 * 1024)
    theme: Literal["light", "dark"] = "light"
    font_size: Optional[str] = Field(default=None, max_length=16)
    width: Optional[int] = None

    @field_validator("theme", mode="before")
    @classmethod
    def normalize_theme(cls, value: Any) -> str:
        return "dark" if value == "dark" else "light"

    @field_validator("width", mode="before")
    @classmethod
    def clamp_width(cls, value: Any) -> Optional[int]:
        if value is None or value == "":
            return None
        return clamp(value, 1280, 320, 3840)

    @property
    def media_type(self) -> str:
        return "text/html"


JobSpec = Union[CaptureJob, MarkdownPdfJob, MarkdownImageJob, MarkdownHtmlJob]

JOB_MODELS: Dict[str, type] = {
    "capture": CaptureJob,
    "md2pdf": MarkdownPdfJob,
    "md2png": MarkdownImageJob,
    "md2html": MarkdownHtmlJob,
}


def _describe(exc: ValidationError) -> str:
    first = exc.errors()[0]
    location = ".".join(str(part) for part in first.get("loc", ()) if part != "kind")
    message = str(first.get("msg", "invalid value"))
    if message.startswith("Value error, "):
        message = message[len("Value error, "):]
    if first.get("type") == "missing":
        return f"Missing required field: {location}"
    return f"{location}: {message}" if location else message


def parse_job(kind: str, data: Mapping[str, Any]) -> JobSpec:
    model = JOB_MODELS.get(kind)
    if model is None:
        raise InvalidRequest(f"Unknown job kind: {kind}")
    payload = {key: value for key, value in data.items() if value is not None}
    payload["kind"] = kind
    try:
        return model.model_validate(payload)
    except ValidationError as exc:
        raise InvalidRequest(_describe(exc)) from exc


__all__ = [
    "CaptureJob",
    "JobSpec",
    "Margins",
    "MarkdownHtmlJob",
    "MarkdownImageJob",
    "MarkdownPdfJob",
    "clamp",
    "ensure_public_url",
    "parse_job",
]
