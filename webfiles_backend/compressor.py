from __future__ import annotations

import asyncio
import os
import platform
import shutil
import stat
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Sequence

from .config import BUNDLED_BIN_DIR, ServerConfig
from .errors import CompressionError, CompressorPermissionError, NotFoundError
from .logging_config import get_logger


logger = get_logger(__name__)

_OS_FAMILIES = {"linux": "linux", "darwin": "mac", "win32": "win", "cygwin": "win"}

_ARCH_ALIASES = {
    "x86_64": "x64",
    "amd64": "x64",
    "x64": "x64",
    "aarch64": "arm64",
    "arm64": "arm64",
    "armv7l": "arm",
    "armv6l": "arm",
    "arm": "arm",
    "i386": "ia32",
    "i686": "ia32",
    "x86": "ia32",
}


@dataclass(frozen=True)
class ProcessResult:
    args: tuple[str, ...]
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def output(self) -> str:
        return "\n".join(part for part in (self.stdout.strip(), self.stderr.strip()) if part)


async def run_process(args: Sequence[str], timeout: Optional[float] = None) -> ProcessResult:
    """Run a command, capturing stdout/stderr.

    Raises OSError when the process cannot be spawned and asyncio.TimeoutError
    when ``timeout`` elapses (the process is killed first). No timeout by default.
    """
    proc = await asyncio.create_subprocess_exec(
        *args,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        raise
    return ProcessResult(
        args=tuple(args),
        returncode=proc.returncode if proc.returncode is not None else -1,
        stdout=stdout.decode("utf-8", errors="replace"),
        stderr=stderr.decode("utf-8", errors="replace"),
    )


def os_family(platform_name: Optional[str] = None) -> str:
    name = platform_name or sys.platform
    for prefix, family in _OS_FAMILIES.items():
        if name.startswith(prefix):
            return family
    return name


def cpu_arch(machine: Optional[str] = None) -> str:
    raw = (machine or platform.machine() or "").lower()
    return _ARCH_ALIASES.get(raw, raw)


def bundled_compressor_path(
    bin_dir: Optional[Path] = None,
    platform_name: Optional[str] = None,
    machine: Optional[str] = None,
) -> Path:
    """Path of the bundled 7za for the current (or given) OS family and architecture."""
    bin_dir = bin_dir or BUNDLED_BIN_DIR
    family = os_family(platform_name)
    exe = "7za.exe" if family == "win" else "7za"
    return bin_dir / family / cpu_arch(machine) / exe


def ensure_executable(path: Path) -> None:
    """Make sure ``path`` has its executable bit, setting it when missing."""
    if os.access(path, os.X_OK):
        return
    try:
        mode = path.stat().st_mode
        os.chmod(path, mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    except OSError as exc:
        raise CompressorPermissionError(f"Cannot make compressor executable: {exc.strerror}") from exc
    if not os.access(path, os.X_OK):
        raise CompressorPermissionError("Compressor is not executable")
    logger.info("Granted execute permission on %s", path.name)


def _remove_quietly(path: Path) -> None:
    try:
        if path.is_dir() and not path.is_symlink():
            shutil.rmtree(path)
        else:
            path.unlink()
    except FileNotFoundError:
        pass
    except OSError as exc:
        logger.debug("Could not remove previous output %s: %s", path, exc)


class Compressor:
    """Creates 7z archives by shelling out to a 7za binary."""

    def __init__(self, config: ServerConfig) -> None:
        self._override = config.compressor_path
        self._timeout = config.compress_timeout_seconds

    def locate(self) -> Path:
        # Chosen per call, so a deployment built for another platform fails here, not at startup.
        path = self._override or bundled_compressor_path()
        if not path.is_file():
            raise CompressionError(f"Compressor binary not found for {os_family()}/{cpu_arch()}")
        return path

    async def compress(self, input_path: Path, output_path: Path) -> Path:
        input_path = Path(input_path)
        output_path = Path(output_path)
        if not (input_path.is_dir() or input_path.is_file()):
            raise NotFoundError("File or directory not found")

        await asyncio.to_thread(_remove_quietly, output_path)

        binary = self.locate()
        if os.name == "posix":
            ensure_executable(binary)

        args = [str(binary), "a", "-t7z", str(output_path), str(input_path), "-y"]
        logger.debug("Running %s", " ".join(args))
        try:
            result = await run_process(args, timeout=self._timeout)
        except asyncio.TimeoutError as exc:
            raise CompressionError(f"Compression timed out after {self._timeout:g}s") from exc
        except OSError as exc:
            raise CompressionError(f"Compression failed: {exc.strerror or exc}") from exc

        if not result.ok:
            logger.warning("Compressor exited with %s: %s", result.returncode, result.output)
            raise CompressionError(
                f"Compression failed (exit code {result.returncode})", output=result.output
            )
        if not output_path.is_file():
            raise CompressionError("Compression failed: no archive was produced", output=result.output)

        logger.info("Compressed %s into %s", input_path.name, output_path.name)
        return output_path
