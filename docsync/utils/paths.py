"""
Path and checksum utilities.

Destination validation runs before any filesystem I/O so a malicious or
malformed export destination never escapes EXPORT_PATH.
"""

import hashlib
import re
import uuid
from pathlib import Path
from typing import Union

from docsync.services.base import ValidationError

MAX_DESTINATION_LENGTH = 200
RESERVED_CHARACTERS = '<>:"|?*'

_UNSAFE_NAME_CHARS = re.compile(r'[<>:"/\\|?*\x00-\x1f]')


def validate_destination_path(destination: str) -> str:
    """
    Validate an export destination relative to the export root.

    Returns the normalised destination (forward slashes, no trailing slash).

    Raises:
        ValidationError: on empty paths, traversal, absolute paths,
            reserved characters or overlong paths.
    """
    if destination is None or not str(destination).strip():
        raise ValidationError("Destination path cannot be empty", field="destinations")

    destination = str(destination).strip()

    if ".." in destination:
        raise ValidationError(
            "Destination path cannot contain '..'",
            field="destinations",
            details={"destination": destination},
        )

    if destination.startswith("/") or destination.startswith("\\"):
        raise ValidationError(
            "Destination path must be relative",
            field="destinations",
            details={"destination": destination},
        )

    bad = sorted({c for c in destination if c in RESERVED_CHARACTERS})
    if bad:
        raise ValidationError(
            f"Destination path contains invalid characters: {''.join(bad)}",
            field="destinations",
            details={"destination": destination},
        )

    if len(destination) > MAX_DESTINATION_LENGTH:
        raise ValidationError(
            f"Destination path is too long (max {MAX_DESTINATION_LENGTH} characters)",
            field="destinations",
            details={"length": len(destination)},
        )

    return destination.replace("\\", "/").rstrip("/")


def resolve_destination(export_root: Path, destination: str) -> Path:
    """Validate destination and resolve it under export_root."""
    relative = validate_destination_path(destination)
    root = export_root.resolve()
    target = (root / relative).resolve()
    # symlinks could still point outside
    if target != root and root not in target.parents:
        raise ValidationError(
            "Destination path escapes the export root",
            field="destinations",
            details={"destination": destination},
        )
    return target


def safe_filename(name: str, max_length: int = 150) -> str:
    """Strip path separators and reserved characters from a remote file name."""
    cleaned = _UNSAFE_NAME_CHARS.sub("_", name or "").strip(" .")
    if not cleaned:
        cleaned = "file"
    if len(cleaned) > max_length:
        suffix = Path(cleaned).suffix[:16]
        cleaned = cleaned[: max_length - len(suffix)] + suffix
    return cleaned


def unique_temp_path(dest_dir: Union[str, Path], name: str) -> Path:
    """Collision-free download path in a shared temp directory."""
    directory = Path(dest_dir)
    directory.mkdir(parents=True, exist_ok=True)
    return directory / f"{uuid.uuid4().hex}_{safe_filename(name)}"


def output_name(name: str) -> str:
    """Converted output name; the source extension is kept so report.docx and report.pdf never collide."""
    return f"{safe_filename(name)}.md"


def md5_text(text: str) -> str:
    return hashlib.md5(text.encode("utf-8")).hexdigest()


def md5_file(path: Union[str, Path], chunk_size: int = 65536) -> str:
    digest = hashlib.md5()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(chunk_size), b""):
            digest.update(chunk)
    return digest.hexdigest()
