from __future__ import annotations

import re
from pathlib import Path
from typing import Optional, Union

from .errors import PathEscapeError


_SEP = "/"


def is_safe_basename(name: str) -> bool:
    """Allow only simple filenames (no directories)."""
    if not isinstance(name, str) or not name:
        return False
    if name in (".", "..") or "\x00" in name:
        return False
    if name != Path(name).name:
        return False
    if "/" in name or "\\" in name:
        return False
    return True


class PathResolver:
    """Confine client-supplied relative paths to a single root directory.

    Both ``/`` and ``\\`` count as separators in client input. Paths that would
    leave the root fall back to ``root/<last segment>``; when there is no usable
    last segment a :class:`PathEscapeError` is raised instead.
    """

    def __init__(self, root_dir: Union[str, Path]) -> None:
        self.root = Path(root_dir).expanduser().resolve()
        self._root_prefix_re = self._compile_root_prefix(self.root)

    @staticmethod
    def _compile_root_prefix(root: Path) -> Optional["re.Pattern[str]"]:
        root_text = str(root).replace("\\", _SEP)
        variants: list[str] = []
        for variant in (_SEP + root_text, root_text, root_text.lstrip(_SEP)):
            if variant.strip(_SEP) and variant not in variants:
                variants.append(variant)
        if not variants:
            return None
        # Longest first so "//root" wins over "/root" at the same position.
        variants.sort(key=len, reverse=True)
        alternatives = "|".join(re.escape(v) for v in variants)
        # Only whole-segment occurrences: "/srv/files" must not eat into "/srv/filesystem".
        return re.compile(rf"(?<![^{_SEP}])(?:{alternatives})(?:{_SEP}+|$)")

    def _strip_root_references(self, text: str) -> str:
        if self._root_prefix_re is None:
            return text
        return self._root_prefix_re.sub("", text)

    def _is_within_root(self, candidate: Path) -> bool:
        return candidate == self.root or self.root in candidate.parents

    def resolve(self, relative_path: Optional[str]) -> Path:
        """Map a client path onto an absolute path inside the root."""
        text = (relative_path or "").replace("\\", _SEP)
        if "\x00" in text:
            raise PathEscapeError("Path contains a NUL byte")
        remainder = self._strip_root_references(text)
        if not remainder.strip(_SEP):
            return self.root

        candidate = (self.root / remainder).resolve()
        if self._is_within_root(candidate):
            return candidate

        # Escape attempt: keep only the final segment of what the client sent.
        trimmed = remainder.rstrip(_SEP)
        segment = trimmed.rsplit(_SEP, 1)[-1]
        if _SEP not in trimmed or segment in ("", ".", ".."):
            raise PathEscapeError("Path escapes the root directory")

        fallback = (self.root / segment).resolve()
        if not self._is_within_root(fallback):
            # A symlink named like the segment can still point outside.
            raise PathEscapeError("Path escapes the root directory")
        return fallback

    def relative_to_root(self, path: Union[str, Path]) -> str:
        """Return the POSIX-style path of ``path`` relative to the root ("" for the root)."""
        rel = Path(path).relative_to(self.root).as_posix()
        return "" if rel == "." else rel
