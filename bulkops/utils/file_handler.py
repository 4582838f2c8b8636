# utils/file_handler.py

"""
File handling utilities
"""

import os
import tempfile
from pathlib import Path
from typing import Optional
from urllib.parse import quote, unquote


def safe_filename(key: str, suffix: str = ".json") -> str:
    """Map a store key to a file name; distinct keys always get distinct names"""
    if not key:
        raise ValueError("An empty key does not map to a usable file name")
    # Percent-encoding is reversible, so two keys can never share a file.
    return f"{quote(key, safe='')}{suffix}"


def key_from_filename(filename: str, suffix: str = ".json") -> str:
    """Inverse of :func:`safe_filename`"""
    if suffix and filename.endswith(suffix):
        filename = filename[:-len(suffix)]
    return unquote(filename)


def read_text(filepath: Path) -> Optional[str]:
    """Read a UTF-8 file, or None when it does not exist"""
    try:
        with open(filepath, 'r', encoding='utf-8') as f:
            return f.read()
    except FileNotFoundError:
        return None


def write_text_atomic(filepath: Path, text: str) -> str:
    """Write ``text`` via a temp file + rename so readers never see partial JSON"""
    Path(filepath).parent.mkdir(parents=True, exist_ok=True)

    fd, tmp_path = tempfile.mkstemp(dir=str(Path(filepath).parent), suffix=".tmp")
    try:
        with os.fdopen(fd, 'w', encoding='utf-8') as f:
            f.write(text)
        os.replace(tmp_path, filepath)
    except BaseException:
        if os.path.exists(tmp_path):
            os.unlink(tmp_path)
        raise

    return str(filepath)


def remove_file(filepath: Path) -> bool:
    """Delete a file; False if it was already gone"""
    try:
        os.unlink(filepath)
        return True
    except FileNotFoundError:
        return False
