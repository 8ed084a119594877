"""Filesystem workspace that applies unified diffs produced by the architect.

Paths are always resolved inside the workspace root. Writes go through a
sidecar ``.lock`` file and an atomic ``os.replace`` so a crash mid-write
never leaves a truncated file behind.
"""

from __future__ import annotations

import asyncio
import fcntl
import logging
import os
import re
import tempfile
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterator

from .errors import PatchApplicationError
from .ports import PatchResult

logger = logging.getLogger(__name__)

DEV_NULL = "/dev/null"
_HUNK_HEADER = re.compile(r"^@@ -(\d+)(?:,(\d+))? \+(\d+)(?:,(\d+))? @@")
_LOCK_SUFFIX = ".lock"
_SKIPPED_DIRS = frozenset({".git", "node_modules", "__pycache__", ".venv", "dist", "build"})


@dataclass
class Hunk:
    old_start: int
    old_len: int
    new_start: int
    new_len: int
    lines: list[tuple[str, str]] = field(default_factory=list)

    @property
    def expected(self) -> list[str]:
        return [text for tag, text in self.lines if tag in " -"]


@dataclass
class ParsedDiff:
    old_path: str | None
    new_path: str | None
    hunks: list[Hunk]

    @property
    def creates_file(self) -> bool:
        return self.old_path == DEV_NULL

    @property
    def deletes_file(self) -> bool:
        return self.new_path == DEV_NULL


def _strip_prefix(path: str) -> str:
    path = path.split("\t", 1)[0].strip()
    if path != DEV_NULL and len(path) > 2 and path[:2] in {"a/", "b/"}:
        return path[2:]
    return path


def parse_unified_diff(diff: str) -> ParsedDiff:
    """Parse a single-file unified diff.

    Raises:
        PatchApplicationError: If the diff has no hunks or a hunk is truncated.
    """
    old_path: str | None = None
    new_path: str | None = None
    hunks: list[Hunk] = []
    lines = diff.splitlines()
    idx = 0
    while idx < len(lines):
        line = lines[idx]
        if line.startswith("--- ") and not hunks:
            old_path = _strip_prefix(line[4:])
        elif line.startswith("+++ ") and not hunks:
            new_path = _strip_prefix(line[4:])
        else:
            match = _HUNK_HEADER.match(line)
            if match:
                hunk = Hunk(
                    old_start=int(match.group(1)),
                    old_len=int(match.group(2) or 1),
                    new_start=int(match.group(3)),
                    new_len=int(match.group(4) or 1),
                )
                old_left, new_left = hunk.old_len, hunk.new_len
                idx += 1
                while idx < len(lines) and (old_left > 0 or new_left > 0):
                    body = lines[idx]
                    if body.startswith("\\"):
                        idx += 1
                        continue
                    tag, text = (body[0], body[1:]) if body else (" ", "")
                    if tag == " ":
                        old_left -= 1
                        new_left -= 1
                    elif tag == "-":
                        old_left -= 1
                    elif tag == "+":
                        new_left -= 1
                    else:
                        raise PatchApplicationError(f"Unexpected line in hunk: {body!r}")
                    hunk.lines.append((tag, text))
                    idx += 1
                if old_left > 0 or new_left > 0:
                    raise PatchApplicationError(f"Hunk starting at line {hunk.old_start} is truncated")
                hunks.append(hunk)
                continue
        idx += 1
    if not hunks:
        raise PatchApplicationError("Diff contains no hunks")
    return ParsedDiff(old_path=old_path, new_path=new_path, hunks=hunks)


def _locate(source: list[str], expected: list[str], preferred: int, floor: int) -> int:
    """Find where ``expected`` occurs, trying ``preferred`` first and then nearby offsets."""
    limit = len(source) - len(expected)
    preferred = min(max(preferred, floor), max(limit, floor))
    if not expected:
        return min(preferred, len(source))
    for offset in range(0, len(source) + 1):
        for candidate in (preferred - offset, preferred + offset):
            if floor <= candidate <= limit and source[candidate : candidate + len(expected)] == expected:
                return candidate
    raise PatchApplicationError(f"Hunk context not found near line {preferred + 1}")


def apply_unified_diff(original: str, diff: str | ParsedDiff) -> str:
    """Apply ``diff`` to ``original`` and return the new text.

    Hunks are matched on exact context; a hunk whose context moved is found by
    searching outward from its declared line.

    Raises:
        PatchApplicationError: If the diff is malformed or a hunk does not apply.
    """
    parsed = diff if isinstance(diff, ParsedDiff) else parse_unified_diff(diff)
    trailing_newline = original.endswith("\n") or not original
    source = original.splitlines()
    output: list[str] = []
    cursor = 0
    for hunk in parsed.hunks:
        preferred = hunk.old_start if hunk.old_len == 0 else hunk.old_start - 1
        position = _locate(source, hunk.expected, preferred, cursor)
        output.extend(source[cursor:position])
        for tag, text in hunk.lines:
            if tag == " ":
                output.append(source[position])
                position += 1
            elif tag == "-":
                position += 1
            else:
                output.append(text)
        cursor = position
    output.extend(source[cursor:])
    if not output:
        return ""
    return "\n".join(output) + ("\n" if trailing_newline else "")


@contextmanager
def _locked_file(path: Path) -> Iterator[None]:
    """Hold an exclusive lock on a sidecar ``.lock`` file while ``path`` is rewritten."""
    lock_path = path.with_suffix(path.suffix + _LOCK_SUFFIX)
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    with lock_path.open("a+", encoding="utf-8") as lock_handle:
        fcntl.flock(lock_handle.fileno(), fcntl.LOCK_EX)
        try:
            yield
        finally:
            fcntl.flock(lock_handle.fileno(), fcntl.LOCK_UN)
    lock_path.unlink(missing_ok=True)


def _atomic_write_text(path: Path, content: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as tmp_handle:
            tmp_handle.write(content)
            tmp_handle.flush()
            os.fsync(tmp_handle.fileno())
        os.replace(tmp_path, str(path))
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


class WorkspacePatchApplier:
    """``PatchApplier`` over a directory on the local filesystem."""

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root).resolve()
        self.root.mkdir(parents=True, exist_ok=True)

    def resolve(self, path: str) -> Path:
        """Map a workspace-relative path to an absolute path inside the root.

        Raises:
            PatchApplicationError: If the path escapes the workspace root.
        """
        relative = _strip_prefix(path).lstrip("/")
        if not relative:
            raise PatchApplicationError("Empty target path")
        target = (self.root / relative).resolve()
        if target != self.root and self.root not in target.parents:
            raise PatchApplicationError(f"Path escapes workspace root: {path}")
        return target

    def _apply_sync(self, path: str, unified_diff: str) -> bool:
        """Apply the diff; return True when it removed the file."""
        target = self.resolve(path)
        parsed = parse_unified_diff(unified_diff)
        with _locked_file(target):
            if parsed.deletes_file:
                target.unlink(missing_ok=True)
                return True
            if target.is_file():
                original = target.read_text(encoding="utf-8")
            elif parsed.creates_file or all(not hunk.expected for hunk in parsed.hunks):
                original = ""
            else:
                raise PatchApplicationError(f"Target file does not exist: {path}")
            _atomic_write_text(target, apply_unified_diff(original, parsed))
        return False

    async def apply(self, path: str, unified_diff: str) -> PatchResult:
        try:
            deleted = await asyncio.to_thread(self._apply_sync, path, unified_diff)
        except (PatchApplicationError, OSError, UnicodeDecodeError) as exc:
            logger.warning("Patch for %s failed: %s", path, exc)
            return PatchResult(path=path, success=False, error=str(exc))
        logger.info("%s %s", "Deleted" if deleted else "Applied patch to", path)
        return PatchResult(path=path, success=True, deleted=deleted)

    async def read_file(self, path: str) -> str:
        target = self.resolve(path)
        if not target.is_file():
            raise FileNotFoundError(f"No such file in workspace: {path}")
        return await asyncio.to_thread(target.read_text, encoding="utf-8")


class WorkspaceContextProvider:
    """``ContextProvider`` that describes the workspace by listing its files."""

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root).resolve()

    def _list(self, limit: int) -> list[str]:
        if not self.root.is_dir():
            return []
        found: list[str] = []
        for current, dirs, files in os.walk(self.root):
            dirs[:] = sorted(d for d in dirs if d not in _SKIPPED_DIRS and not d.startswith("."))
            for name in sorted(files):
                if name.startswith("."):
                    continue
                found.append(str(Path(current, name).relative_to(self.root)))
                if len(found) >= limit:
                    return found
        return found

    async def fetch(self, query: str, *, limit: int = 20) -> list[str]:
        files = await asyncio.to_thread(self._list, limit)
        return [f"file: {path}" for path in files]
