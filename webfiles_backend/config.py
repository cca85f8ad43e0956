from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional


# webfiles_backend/ -> project root
PROJECT_ROOT = Path(__file__).resolve().parent.parent

# Bundled compressor binaries live under bin/<os family>/<arch>/.
BUNDLED_BIN_DIR = Path(__file__).resolve().parent / "bin"

_TRUE_VALUES = {"1", "true", "yes", "on"}


def _expand_path(raw: str) -> Path:
    # "~/files" style paths are accepted, like a shell would.
    return Path(raw.strip()).expanduser().resolve()


def _env_bool(env: Mapping[str, str], name: str, default: bool) -> bool:
    raw = env.get(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in _TRUE_VALUES


def _env_float(env: Mapping[str, str], name: str, default: Optional[float]) -> Optional[float]:
    raw = env.get(name)
    if raw is None or not raw.strip():
        return default
    return float(raw)


@dataclass(frozen=True)
class ServerConfig:
    root_dir: Path
    temp_dir: Path
    show_folder_sizes: bool = False
    temp_max_age_seconds: float = 60 * 60.0
    sweep_interval_seconds: float = 600.0
    compressor_path: Optional[Path] = None
    # None keeps the compressor unbounded.
    compress_timeout_seconds: Optional[float] = None
    # 0 disables the upload limit.
    max_upload_bytes: int = 0
    static_dir: Optional[Path] = None

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "ServerConfig":
        """Build the configuration from WEBFILES_* environment variables."""
        env = os.environ if env is None else env

        root_raw = env.get("WEBFILES_ROOT", "")
        root_dir = _expand_path(root_raw) if root_raw.strip() else PROJECT_ROOT / "files"

        temp_raw = env.get("WEBFILES_TEMP_DIR", "")
        temp_dir = _expand_path(temp_raw) if temp_raw.strip() else PROJECT_ROOT / "temp"

        compressor_raw = env.get("WEBFILES_COMPRESSOR", "")
        compressor_path = _expand_path(compressor_raw) if compressor_raw.strip() else None

        static_raw = env.get("WEBFILES_STATIC_DIR", "")
        static_dir = _expand_path(static_raw) if static_raw.strip() else PROJECT_ROOT / "public"

        timeout = _env_float(env, "WEBFILES_COMPRESS_TIMEOUT_SECONDS", None)
        if timeout is not None and timeout <= 0:
            timeout = None

        max_age_minutes = _env_float(env, "WEBFILES_TEMP_MAX_AGE_MINUTES", 60.0)

        return cls(
            root_dir=root_dir,
            temp_dir=temp_dir,
            show_folder_sizes=_env_bool(env, "WEBFILES_SHOW_FOLDER_SIZES", False),
            temp_max_age_seconds=max(0.0, max_age_minutes or 0.0) * 60.0,
            sweep_interval_seconds=_env_float(env, "WEBFILES_SWEEP_INTERVAL_SECONDS", 600.0) or 600.0,
            compressor_path=compressor_path,
            compress_timeout_seconds=timeout,
            max_upload_bytes=int(env.get("WEBFILES_MAX_UPLOAD_BYTES", "0") or 0),
            static_dir=static_dir,
        )

    def ensure_dirs(self) -> None:
        """Create the root and temp directories. Failures here are fatal at startup."""
        self.root_dir.mkdir(parents=True, exist_ok=True)
        self.temp_dir.mkdir(parents=True, exist_ok=True)
