"""
File utilities for downloaded filing documents.

Documents are stored under a deterministic name derived from the filing
identity, so re-downloading the same filing overwrites instead of
accumulating copies.
"""

import re
from pathlib import Path

from slugify import slugify

from lienflow.utils.exceptions import FileError
from lienflow.utils.logging import get_logger

logger = get_logger(__name__)


def ensure_suffix(filename: str, suffix: str) -> str:
    """
    Ensure a filename has the specified suffix/extension.

    Example:
        >>> ensure_suffix("U260005937931_01202026", ".pdf")
        'U260005937931_01202026.pdf'
    """
    if not suffix.startswith("."):
        suffix = f".{suffix}"

    if not filename.lower().endswith(suffix.lower()):
        return f"{filename}{suffix}"

    return filename


def document_filename(file_number: str, filing_date: str, suffix: str = ".pdf") -> str:
    """
    Deterministic document name for a filing.

    The file number is kept as listed (case preserved) but stripped of
    characters unsafe in a path; the date loses its separators.

    Example:
        >>> document_filename("U260005937931", "01/20/2026")
        'U260005937931_01202026.pdf'
    """
    if not file_number:
        raise FileError("File number cannot be empty", operation="name")

    safe_number = slugify(
        file_number,
        lowercase=False,
        separator="-",
        regex_pattern=r"[^-A-Za-z0-9]+",
    )
    safe_date = re.sub(r"\D", "", filing_date or "")
    return ensure_suffix(f"{safe_number}_{safe_date}", suffix)


def ensure_dir(path: str | Path) -> Path:
    """
    Create ``path`` (and parents) if needed.

    Raises:
        FileError: If the directory cannot be created
    """
    directory = Path(path)
    try:
        directory.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise FileError(
            f"Failed to create directory: {e}",
            file_path=str(directory),
            operation="mkdir",
        ) from e
    return directory
