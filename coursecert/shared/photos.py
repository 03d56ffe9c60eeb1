from __future__ import annotations

import io
import logging
import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional

import requests
from PIL import Image, ImageOps, UnidentifiedImageError

from .storage import safe_join


logger = logging.getLogger("coursecert.certgen")

PHOTO_SIZE = (150, 200)
PHOTO_QUALITY = 85
ALLOWED_FORMATS = {"JPEG", "PNG", "WEBP", "GIF"}
MAX_BYTES = 10 * 1024 * 1024
MAX_DIMENSION = 8192
FETCH_TIMEOUT = 10
_DEFAULT_FILL = (240, 240, 240)

SOURCE_REMOTE = "remote"
SOURCE_LOCAL = "local"
SOURCE_ABSENT = "absent"
SOURCE_DEFAULT = "default"


class PhotoResolutionError(ValueError):
    pass


@dataclass(frozen=True)
class PhotoSettings:
    storage_root: str
    max_bytes: int = MAX_BYTES
    timeout: float = FETCH_TIMEOUT
    size: tuple[int, int] = PHOTO_SIZE
    quality: int = PHOTO_QUALITY


@dataclass(frozen=True)
class ResolvedPhoto:
    data: bytes
    source: str
    warning: Optional[str] = None

    @property
    def is_default(self) -> bool:
        return self.source == SOURCE_DEFAULT


def classify_photo_ref(ref: Optional[str]) -> str:
    value = (ref or "").strip()
    if not value:
        return SOURCE_ABSENT
    if value.lower().startswith(("http://", "https://")):
        return SOURCE_REMOTE
    return SOURCE_LOCAL


def _validate_image_bytes(raw: bytes, max_bytes: int) -> str:
    if not raw:
        raise PhotoResolutionError("Photo is empty.")
    if len(raw) > max_bytes:
        raise PhotoResolutionError(
            f"Photo is larger than {max_bytes // (1024 * 1024)} MB."
        )
    try:
        image = Image.open(io.BytesIO(raw))
        image.verify()
        image = Image.open(io.BytesIO(raw))
    except (UnidentifiedImageError, OSError, SyntaxError):
        raise PhotoResolutionError("Photo is not a valid image.")
    if image.format not in ALLOWED_FORMATS:
        raise PhotoResolutionError(f"Photo format {image.format} is not allowed.")
    width, height = image.size
    if width > MAX_DIMENSION or height > MAX_DIMENSION:
        raise PhotoResolutionError("Photo dimensions are too large.")
    return image.format


def _fetch_remote(url: str, settings: PhotoSettings) -> bytes:
    try:
        with requests.get(url, timeout=settings.timeout, stream=True) as resp:
            if resp.status_code != 200:
                raise PhotoResolutionError(
                    f"Photo download failed with status {resp.status_code}."
                )
            declared = resp.headers.get("Content-Length")
            if declared and declared.isdigit() and int(declared) > settings.max_bytes:
                raise PhotoResolutionError("Photo is larger than the allowed size.")
            buffer = io.BytesIO()
            for chunk in resp.iter_content(chunk_size=64 * 1024):
                if not chunk:
                    continue
                buffer.write(chunk)
                if buffer.tell() > settings.max_bytes:
                    raise PhotoResolutionError("Photo is larger than the allowed size.")
            return buffer.getvalue()
    except requests.RequestException as exc:
        raise PhotoResolutionError(f"Photo download failed: {exc}") from exc


def _read_local(ref: str, settings: PhotoSettings) -> bytes:
    path = safe_join(settings.storage_root, ref)
    if not path or not os.path.isfile(path):
        raise PhotoResolutionError(f"Photo not found in storage: {ref}")
    if os.path.getsize(path) > settings.max_bytes:
        raise PhotoResolutionError("Photo is larger than the allowed size.")
    with open(path, "rb") as fh:
        return fh.read()


def fetch_photo(ref: Optional[str], settings: PhotoSettings) -> bytes:
    """Load the raw photo bytes and check them against the format allow-list."""
    kind = classify_photo_ref(ref)
    if kind == SOURCE_ABSENT:
        raise PhotoResolutionError("No photo reference.")
    if kind == SOURCE_REMOTE:
        raw = _fetch_remote(ref.strip(), settings)
    else:
        raw = _read_local(ref.strip(), settings)
    _validate_image_bytes(raw, settings.max_bytes)
    return raw


def normalize_photo(
    raw: bytes, size: tuple[int, int] = PHOTO_SIZE, quality: int = PHOTO_QUALITY
) -> bytes:
    """Crop-to-fill into a fixed JPEG raster; the image is never stretched."""
    try:
        with Image.open(io.BytesIO(raw)) as img:
            img = ImageOps.exif_transpose(img)
            if img.mode in ("RGBA", "LA", "P"):
                rgba = img.convert("RGBA")
                flattened = Image.new("RGB", rgba.size, (255, 255, 255))
                flattened.paste(rgba, mask=rgba.split()[-1])
                img = flattened
            else:
                img = img.convert("RGB")
            fitted = ImageOps.fit(img, size, Image.Resampling.LANCZOS)
            out = io.BytesIO()
            fitted.save(out, format="JPEG", quality=quality)
            return out.getvalue()
    except (UnidentifiedImageError, OSError, ValueError) as exc:
        raise PhotoResolutionError(f"Photo could not be processed: {exc}") from exc


@lru_cache(maxsize=4)
def default_photo(
    size: tuple[int, int] = PHOTO_SIZE, quality: int = PHOTO_QUALITY
) -> bytes:
    placeholder = Image.new("RGB", size, _DEFAULT_FILL)
    out = io.BytesIO()
    placeholder.save(out, format="JPEG", quality=quality)
    return out.getvalue()


def resolve_photo(ref: Optional[str], settings: PhotoSettings) -> ResolvedPhoto:
    """Fetch and normalize a subject photo; falls back to the default image."""
    kind = classify_photo_ref(ref)
    try:
        raw = fetch_photo(ref, settings)
        data = normalize_photo(raw, settings.size, settings.quality)
    except PhotoResolutionError as exc:
        logger.warning("[CERT-PHOTO] ref=%s kind=%s fallback=default reason=%s", ref, kind, exc)
        return ResolvedPhoto(
            data=default_photo(settings.size, settings.quality),
            source=SOURCE_DEFAULT,
            warning=str(exc),
        )
    except Exception as exc:
        logger.exception("[CERT-PHOTO] ref=%s kind=%s unexpected failure", ref, kind)
        return ResolvedPhoto(
            data=default_photo(settings.size, settings.quality),
            source=SOURCE_DEFAULT,
            warning=f"Unexpected photo failure: {exc}",
        )
    return ResolvedPhoto(data=data, source=kind)
