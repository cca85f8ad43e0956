from __future__ import annotations

import asyncio
import locale
import os
import shutil
import stat
import time
import unicodedata
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from .archive import detect
from .errors import FileOperationError, NotFoundError
from .logging_config import get_logger
from .security import PathResolver


logger = get_logger(__name__)

# Shown instead of a size or date that was not computed.
PLACEHOLDER = "—"
PARENT_ENTRY_NAME = ".."

BINARY_SNIFF_BYTES = 512

TEMP_ARCHIVE_SUFFIX = "_folder.7z"

_SIZE_UNITS = ("Bytes", "KB", "MB", "GB")
_SIZE_DECIMALS = (0, 1, 2, 2)


@dataclass(frozen=True)
class DirectoryEntry:
    name: str
    path: str
    is_dir: bool
    size: str
    modified: str
    is_compressed: bool = False

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "path": self.path,
            "isDir": self.is_dir,
            "isCompressed": self.is_compressed,
            "size": self.size,
            "modifiedDate": self.modified,
        }


def _now_epoch() -> float:
    return time.time()


def format_size(num_bytes: float) -> str:
    value = float(num_bytes)
    i = 0
    while value >= 1024 and i < len(_SIZE_UNITS) - 1:
        value /= 1024
        i += 1
    return f"{value:.{_SIZE_DECIMALS[i]}f} {_SIZE_UNITS[i]}"


def format_date(timestamp: float) -> str:
    return time.strftime("%d/%m/%Y %H:%M:%S", time.localtime(timestamp))


def folder_size(path: Path) -> int:
    """Total size in bytes of the regular files below ``path``. Unreadable entries count as 0."""
    total = 0
    for dirpath, _dirnames, filenames in os.walk(path):
        for filename in filenames:
            try:
                total += os.lstat(os.path.join(dirpath, filename)).st_size
            except OSError:
                continue
    return total


def strip_diacritics(text: str) -> str:
    nfd = unicodedata.normalize("NFD", text)
    return "".join(char for char in nfd if unicodedata.category(char) != "Mn")


def set_collation_locale() -> None:
    """Collate names with the LC_COLLATE / LANG locale of the environment."""
    try:
        locale.setlocale(locale.LC_COLLATE, "")
    except locale.Error as exc:
        logger.warning("Falling back to the default collation locale: %s", exc)


def name_sort_key(name: str) -> tuple[str, str, str]:
    # Base letters, then accents, then the raw name.
    folded = name.casefold()
    return (locale.strxfrm(strip_diacritics(folded)), locale.strxfrm(folded), name)


def _entry_for(resolver: PathResolver, child: Path, show_folder_sizes: bool) -> DirectoryEntry:
    try:
        st = child.stat()
    except OSError:
        # Dangling symlink.
        st = child.lstat()
    is_dir = child.is_dir()
    if is_dir:
        size = format_size(folder_size(child)) if show_folder_sizes else PLACEHOLDER
    else:
        size = format_size(st.st_size)
    return DirectoryEntry(
        name=child.name,
        path=resolver.relative_to_root(child),
        is_dir=is_dir,
        size=size,
        modified=format_date(st.st_mtime),
        # Only regular files are sniffed: opening a FIFO would block.
        is_compressed=stat.S_ISREG(st.st_mode) and detect(child).is_archive,
    )


def list_directory(
    resolver: PathResolver, directory: Path, show_folder_sizes: bool = False
) -> list[DirectoryEntry]:
    """List ``directory``: directories first, then files, each group by name.

    Entries are recomputed on every call.
    """
    if not directory.is_dir():
        raise NotFoundError("Directory not found")
    try:
        entries = [_entry_for(resolver, child, show_folder_sizes) for child in directory.iterdir()]
    except OSError as exc:
        raise FileOperationError(f"Failed to list directory: {exc.strerror or exc}") from exc
    entries.sort(key=lambda e: (not e.is_dir, name_sort_key(e.name)))
    return entries


def parent_entry(resolver: PathResolver, directory: Path) -> Optional[DirectoryEntry]:
    """Synthetic ".." entry for ``directory``, or None at the root."""
    if directory == resolver.root:
        return None
    return DirectoryEntry(
        name=PARENT_ENTRY_NAME,
        path=resolver.relative_to_root(directory.parent),
        is_dir=True,
        size=PLACEHOLDER,
        modified=PLACEHOLDER,
    )


def is_binary_file(path: Path) -> bool:
    with path.open("rb") as fh:
        return b"\x00" in fh.read(BINARY_SNIFF_BYTES)


async def _copy_tree(src: Path, dst: Path) -> list[Path]:
    """Copy one subtree, returning the source paths that failed."""
    try:
        if src.is_dir() and not src.is_symlink():
            await asyncio.to_thread(dst.mkdir, parents=True, exist_ok=True)
            children = await asyncio.to_thread(lambda: list(src.iterdir()))
        else:
            await asyncio.to_thread(shutil.copy2, src, dst, follow_symlinks=False)
            return []
    except OSError as exc:
        logger.warning("Copy of %s failed: %s", src.name, exc)
        return [src]

    results = await asyncio.gather(*(_copy_tree(child, dst / child.name) for child in children))
    return [failed for subtree in results for failed in subtree]


async def copy_path(src: Path, dst: Path) -> None:
    """Copy a file, or a directory recursively with siblings copied concurrently."""
    if not os.path.lexists(src):
        raise NotFoundError("File or directory not found")
    if src.is_dir() and (dst == src or src in dst.parents):
        raise FileOperationError("Cannot copy a directory into itself")
    failed = await _copy_tree(src, dst)
    if failed:
        raise FileOperationError(f"Failed to copy {len(failed)} item(s)")


def _remove(path: Path) -> None:
    if path.is_dir() and not path.is_symlink():
        shutil.rmtree(path)
    elif os.path.lexists(path):
        path.unlink()


async def delete_path(path: Path) -> None:
    """Delete a file or directory tree. A missing path is not an error."""
    try:
        await asyncio.to_thread(_remove, path)
    except OSError as exc:
        raise FileOperationError(f"Failed to delete: {exc.strerror or exc}") from exc


async def delete_contents(directory: Path) -> int:
    """Delete every entry inside ``directory`` but keep the directory itself."""
    if not directory.is_dir():
        raise NotFoundError("Directory not found")
    children = await asyncio.to_thread(lambda: list(directory.iterdir()))
    results = await asyncio.gather(
        *(asyncio.to_thread(_remove, child) for child in children), return_exceptions=True
    )
    failed = [child.name for child, result in zip(children, results) if isinstance(result, Exception)]
    if failed:
        raise FileOperationError(f"Failed to delete: {', '.join(sorted(failed))}")
    return len(children)


def new_temp_archive_path(temp_dir: Path, now: Optional[float] = None) -> Path:
    """Temp archive path whose name starts with its creation time in epoch milliseconds."""
    created_ms = int((now if now is not None else _now_epoch()) * 1000)
    return temp_dir / f"{created_ms}_{uuid.uuid4().hex[:8]}{TEMP_ARCHIVE_SUFFIX}"


def parse_temp_timestamp(name: str) -> Optional[int]:
    prefix = name.split("_", 1)[0]
    if not prefix.isascii() or not prefix.isdigit():
        return None
    return int(prefix)


def sweep_temp_archives(temp_dir: Path, max_age_seconds: float, now: Optional[float] = None) -> int:
    """Delete temp archives older than ``max_age_seconds``.

    Only regular files with a timestamp prefix are considered. Errors on one file are
    logged and the scan continues. Returns the number of deleted files.
    """
    if not temp_dir.is_dir():
        return 0
    now_ms = (now if now is not None else _now_epoch()) * 1000
    max_age_ms = max(0.0, max_age_seconds) * 1000

    try:
        children = list(temp_dir.iterdir())
    except OSError as exc:
        logger.warning("Cannot scan temp directory: %s", exc)
        return 0

    deleted = 0
    for child in children:
        created_ms = parse_temp_timestamp(child.name)
        if created_ms is None or not child.is_file():
            continue
        if now_ms - created_ms <= max_age_ms:
            continue
        try:
            _remove(child)
            deleted += 1
        except OSError as exc:
            logger.warning("Could not remove expired temp archive %s: %s", child.name, exc)
    if deleted:
        logger.info("Swept %d expired temp archive(s)", deleted)
    return deleted
