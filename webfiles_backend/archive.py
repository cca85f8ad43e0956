from __future__ import annotations

import asyncio
import bz2
import gzip
import shutil
import tarfile
import zipfile
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

import py7zr
import rarfile

from .errors import ExtractionError, UnsupportedFormatError
from .logging_config import get_logger
from .security import is_safe_basename


logger = get_logger(__name__)

# Enough to reach the "ustar" marker of a tar header.
HEADER_READ_BYTES = 512


class ArchiveFormat(str, Enum):
    ZIP = "zip"
    GZIP = "gzip"
    TAR = "tar"
    BZIP2 = "bzip2"
    SEVEN_ZIP = "7z"
    RAR = "rar"
    UNKNOWN = "unknown"

    def matches(self, header: bytes) -> bool:
        """True if ``header`` starts like an archive of this format."""
        for fmt, offset, magic in SIGNATURES:
            if fmt is self and header[offset:offset + len(magic)] == magic:
                return True
        return False

    @property
    def is_archive(self) -> bool:
        return self is not ArchiveFormat.UNKNOWN


# Canonical signature table, checked in order; the first match wins.
SIGNATURES: tuple[tuple[ArchiveFormat, int, bytes], ...] = (
    (ArchiveFormat.ZIP, 0, b"PK\x03\x04"),
    (ArchiveFormat.ZIP, 0, b"PK\x05\x06"),  # empty zip
    (ArchiveFormat.GZIP, 0, b"\x1f\x8b"),
    (ArchiveFormat.BZIP2, 0, b"BZh"),
    (ArchiveFormat.SEVEN_ZIP, 0, b"7z\xbc\xaf\x27\x1c"),
    (ArchiveFormat.RAR, 0, b"Rar!\x1a\x07"),
    (ArchiveFormat.TAR, 257, b"ustar"),
)

# Compression suffix -> suffix of the decompressed file.
_STREAM_SUFFIXES = {
    ArchiveFormat.GZIP: {".gz": "", ".gzip": "", ".z": "", ".tgz": ".tar"},
    ArchiveFormat.BZIP2: {".bz2": "", ".bz": "", ".tbz2": ".tar", ".tbz": ".tar"},
}


@dataclass(frozen=True)
class ExtractResult:
    format: ArchiveFormat
    output_dir: Path


def detect_bytes(header: bytes) -> ArchiveFormat:
    for fmt, offset, magic in SIGNATURES:
        if header[offset:offset + len(magic)] == magic:
            return fmt
    return ArchiveFormat.UNKNOWN


def detect(path: Path) -> ArchiveFormat:
    """Sniff the archive format of ``path`` from its leading bytes.

    Truncated, empty or unreadable files are UNKNOWN; this never raises.
    """
    try:
        with Path(path).open("rb") as fh:
            header = fh.read(HEADER_READ_BYTES)
    except OSError:
        return ArchiveFormat.UNKNOWN
    return detect_bytes(header)


def stream_output_name(input_name: str, fmt: ArchiveFormat) -> str:
    """Name of the file a single-stream archive (gzip, bzip2) decompresses to."""
    path = Path(input_name)
    replacement = _STREAM_SUFFIXES.get(fmt, {}).get(path.suffix.lower())
    if replacement is None or not path.stem:
        return f"{path.name}.out"
    return f"{path.stem}{replacement}"


def _extract_zip(input_path: Path, output_dir: Path) -> None:
    # zipfile drops absolute prefixes and ".." components from member names.
    with zipfile.ZipFile(input_path) as zf:
        zf.extractall(output_dir)


def _extract_tar(input_path: Path, output_dir: Path) -> None:
    with tarfile.open(input_path, mode="r:*") as tf:
        tf.extractall(output_dir, filter="data")


def _extract_stream(input_path: Path, output_dir: Path, fmt: ArchiveFormat) -> None:
    name = stream_output_name(input_path.name, fmt)
    if not is_safe_basename(name):
        raise ExtractionError("Invalid output file name")
    opener = gzip.open if fmt is ArchiveFormat.GZIP else bz2.open
    with opener(input_path, "rb") as src, (output_dir / name).open("wb") as dst:
        shutil.copyfileobj(src, dst)


def _extract_7z(input_path: Path, output_dir: Path) -> None:
    with py7zr.SevenZipFile(input_path, mode="r") as szf:
        for name in szf.getnames():
            target = (output_dir / name).resolve()
            if target != output_dir and output_dir not in target.parents:
                raise ExtractionError(f"Unsafe path in archive: {name}")
        szf.extractall(path=output_dir)


def _extract_rar(input_path: Path, output_dir: Path) -> None:
    with rarfile.RarFile(input_path) as rf:
        for info in rf.infolist():
            target = (output_dir / info.filename).resolve()
            if target != output_dir and output_dir not in target.parents:
                raise ExtractionError(f"Unsafe path in archive: {info.filename}")
        rf.extractall(path=output_dir)


def extract(input_path: Path, output_dir: Path) -> ExtractResult:
    """Extract ``input_path`` into ``output_dir``, dispatching on the sniffed format.

    Raises UnsupportedFormatError without touching the filesystem when the
    format is not recognized, and ExtractionError when a decoder fails.
    Entries written before a failure are left in place.
    """
    input_path = Path(input_path)
    output_dir = Path(output_dir).resolve()
    fmt = detect(input_path)
    if fmt is ArchiveFormat.UNKNOWN:
        raise UnsupportedFormatError("Unrecognized archive format")

    try:
        output_dir.mkdir(parents=True, exist_ok=True)
        if fmt is ArchiveFormat.ZIP:
            _extract_zip(input_path, output_dir)
        elif fmt is ArchiveFormat.TAR:
            _extract_tar(input_path, output_dir)
        elif fmt in (ArchiveFormat.GZIP, ArchiveFormat.BZIP2):
            _extract_stream(input_path, output_dir, fmt)
        elif fmt is ArchiveFormat.SEVEN_ZIP:
            _extract_7z(input_path, output_dir)
        else:
            _extract_rar(input_path, output_dir)
    except ExtractionError:
        raise
    except Exception as exc:
        # Decoders raise their own hierarchies (BadZipFile, TarError, Bad7zFile, rarfile.Error, ...).
        logger.warning("Extraction of %s as %s failed: %s", input_path.name, fmt.value, exc)
        raise ExtractionError(f"Failed to extract {fmt.value} archive: {exc}") from exc

    logger.info("Extracted %s archive %s", fmt.value, input_path.name)
    return ExtractResult(format=fmt, output_dir=output_dir)


async def extract_async(input_path: Path, output_dir: Path) -> ExtractResult:
    return await asyncio.to_thread(extract, input_path, output_dir)
