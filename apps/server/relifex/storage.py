"""Bill file storage helpers.

Uploaded bills are written under the configured ``storage_dir`` with a unique
timestamped name; content hashing and MIME detection mirror what the review
screens need (SHA-256 to spot re-submitted bills, MIME for the AI prompt).
"""

import hashlib
import mimetypes
from datetime import datetime
from pathlib import Path
from typing import Optional

import filetype
from werkzeug.datastructures import FileStorage
from werkzeug.utils import secure_filename

ALLOWED_MIME_PREFIXES = ("image/", "application/pdf")


def compute_sha256(fp: Path) -> str:
    """Hex SHA-256 of a bill file, read in 1 MiB chunks."""
    h = hashlib.sha256()
    with fp.open("rb") as f:
        for chunk in iter(lambda: f.read(1024 * 1024), b""):
            h.update(chunk)
    return h.hexdigest()


def detect_mime(fp: Path, fallback_name: str) -> str:
    """Sniff the bill's MIME type from its bytes, then from ``fallback_name``."""
    kind = filetype.guess(str(fp))
    if kind:
        return kind.mime
    mime, _ = mimetypes.guess_type(fallback_name)
    return mime or "application/octet-stream"


def is_allowed_mime(mime: Optional[str]) -> bool:
    return bool(mime) and mime.startswith(ALLOWED_MIME_PREFIXES)


def save_upload(file: FileStorage, storage_dir: Path, subdir: str = "bills") -> Path:
    """Persist an uploaded file and return its path."""
    target = storage_dir / subdir
    target.mkdir(parents=True, exist_ok=True)
    safe_name = secure_filename(file.filename or "") or f"upload_{int(datetime.utcnow().timestamp())}"
    ts = datetime.utcnow().strftime("%Y%m%d_%H%M%S_%f")
    dest = target / f"{ts}__{safe_name}"
    file.save(dest)
    return dest


def is_within(fp: Path, root: Path) -> bool:
    """True when ``fp`` resolves inside ``root`` (guards file serving/deletion)."""
    try:
        fp.resolve().relative_to(root.resolve())
        return True
    except ValueError:
        return False
