"""Error types surfaced by the file manager.

Every error carries the HTTP status the request boundary answers with; the
message is shown to the user as-is, so it must never contain absolute paths
outside the managed root.
"""

from __future__ import annotations


class FileManagerError(Exception):
    """Base class for failures recovered at the request boundary."""

    status_code = 500


class PathEscapeError(FileManagerError, ValueError):
    """A client path tried to leave the root and no safe fallback exists."""

    status_code = 400


class NotFoundError(FileManagerError):
    status_code = 404


class BinaryContentError(FileManagerError):
    """File looks binary and cannot be returned as text."""

    status_code = 400


class UnsupportedFormatError(FileManagerError):
    """Archive format was not recognized from its magic bytes."""

    status_code = 400


class ExtractionError(FileManagerError):
    """Decoder failed on a recognized archive. Partial output is left on disk."""


class CompressorPermissionError(FileManagerError):
    """Compressor binary is not executable and could not be made so."""


class CompressionError(FileManagerError):
    """Compressor could not be spawned, timed out, or exited with an error."""

    def __init__(self, message: str, output: str = "") -> None:
        super().__init__(message)
        self.output = output


class FileOperationError(FileManagerError):
    """Filesystem operation failed (io-failure)."""


class UploadTooLargeError(FileManagerError):
    status_code = 413
