"""
File primitives shared by the installer, configurer and service manager.

Everything a reader could observe half-written goes through temp + rename.
"""

import os
import tempfile
from pathlib import Path
from typing import Optional

from promtail_provision.errors import FilesystemError

CHUNK_SIZE = 64 * 1024


def read_bytes(path) -> Optional[bytes]:
    """Current file content, or None when the file does not exist"""
    try:
        return Path(path).read_bytes()
    except (FileNotFoundError, NotADirectoryError):
        return None
    except OSError as e:
        raise FilesystemError(f'Cannot read {path}: {e}') from e


def atomic_write(path, data: bytes, mode: int = 0o644) -> None:
    """
    Replace a file so readers only ever see the old or the new content

    Args:
        path: Destination file
        data: Full new content
        mode: Permission bits, applied before the file becomes visible
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    fd, tmp_name = tempfile.mkstemp(prefix=f'.{path.name}.', dir=str(path.parent))
    try:
        os.fchmod(fd, mode)
        with os.fdopen(fd, 'wb') as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise


def atomic_symlink(target, link) -> None:
    """
    Point ``link`` at ``target`` without a window where ``link`` is missing

    A temporary symlink is created next to the link and renamed over it.
    """
    link = Path(link)
    tmp_link = link.parent / f'.{link.name}.tmp-{os.getpid()}'
    if tmp_link.is_symlink() or tmp_link.exists():
        tmp_link.unlink()
    os.symlink(str(target), str(tmp_link))
    try:
        os.replace(tmp_link, link)
    except BaseException:
        if tmp_link.is_symlink():
            tmp_link.unlink()
        raise


def symlink_target(link) -> Optional[str]:
    """Target of a symlink, or None if ``link`` is not a symlink"""
    link = Path(link)
    if not link.is_symlink():
        return None
    return os.readlink(str(link))
