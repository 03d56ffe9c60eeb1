import os
import tempfile
from datetime import date, datetime
from typing import Optional


def ensure_dir(path: str) -> None:
    """Create directory if missing (mkdir -p equivalent)."""
    os.makedirs(path, exist_ok=True)


def write_atomic(path: str, data, mode: str = "wb") -> None:
    """Write data to a temporary file then atomically rename to target path."""
    dir_path = os.path.dirname(path)
    ensure_dir(dir_path)
    fd, tmp_path = tempfile.mkstemp(dir=dir_path)
    try:
        with os.fdopen(fd, mode) as f:
            f.write(data)
        os.replace(tmp_path, path)
    finally:
        if os.path.exists(tmp_path):
            os.remove(tmp_path)


def discard_file(path: Optional[str]) -> None:
    """Remove a written file whose database record was never committed."""
    if path and os.path.exists(path):
        os.remove(path)


def safe_join(root: str, candidate: Optional[str]) -> Optional[str]:
    """Resolve ``candidate`` under ``root``; None if it escapes the root."""
    raw = (candidate or "").strip()
    if not raw:
        return None
    root_real = os.path.realpath(root)
    resolved = os.path.realpath(os.path.join(root_real, raw.lstrip("/")))
    if resolved == root_real or resolved.startswith(f"{root_real}{os.sep}"):
        return resolved
    return None


def certificate_storage_paths(
    site_root: str, filename: str, issued: Optional[date] = None
) -> tuple[str, str]:
    """Return ``(abs_path, rel_path)`` for a certificate file under SITE_ROOT."""
    reference = issued or date.today()
    if isinstance(reference, datetime):
        reference = reference.date()
    rel_path = os.path.join(
        "certificates", f"{reference.year:04d}", f"{reference.month:02d}", filename
    )
    return os.path.join(site_root, rel_path), rel_path


def build_download_path(filename: Optional[str]) -> Optional[str]:
    if not filename:
        return None
    return f"/certificates/download/{filename}"
