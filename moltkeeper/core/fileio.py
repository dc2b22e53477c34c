"""
Atomic file helpers.

Every write that matters for correctness (config document, auth store,
markers) is staged in a temp file in the destination directory and renamed
into place, so readers never observe a partial document.
"""

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Optional

logger = logging.getLogger(__name__)


def atomic_write_text(path: Path, text: str, mode: Optional[int] = None) -> None:
    """Write text to path via temp file + os.replace. The temp file never outlives the call."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(text)
            handle.flush()
            os.fsync(handle.fileno())
        if mode is not None:
            os.chmod(tmp_name, mode)
        os.replace(tmp_name, path)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except FileNotFoundError:
            pass
        raise


def atomic_write_json(path: Path, value: Any, mode: Optional[int] = None) -> None:
    atomic_write_text(path, json.dumps(value, indent=2) + "\n", mode=mode)


def read_text(path: Path) -> Optional[str]:
    """Return file text, or None when the file is missing or unreadable."""
    try:
        return Path(path).read_text(encoding="utf-8")
    except FileNotFoundError:
        return None
    except OSError as e:
        logger.warning(f"Could not read {path}: {e}")
        return None


def parse_json(text: Optional[str]) -> Any:
    """Parse JSON text; blank or malformed input yields None."""
    if not text or not text.strip():
        return None
    try:
        return json.loads(text)
    except ValueError:
        return None


def read_json(path: Path) -> Any:
    return parse_json(read_text(path))
