"""
Local filesystem collaborators: log tails, artifact stores and a file report sink.
"""

import asyncio
import json
import logging
import shlex
from collections import deque
from pathlib import Path
from typing import Any

from autoheal.errors import ArtifactError
from autoheal.providers.base import ArtifactStore, ReportingSink

logger = logging.getLogger(__name__)


class LocalLogSource:
    """Reads the tail of local log files."""

    name = "local"

    async def tail(self, path: str, max_lines: int) -> str:
        """Last max_lines lines of a file. A missing file yields an empty string."""
        return await asyncio.to_thread(self._tail_sync, Path(path), max_lines)

    @staticmethod
    def _tail_sync(path: Path, max_lines: int) -> str:
        if not path.exists():
            return ""
        with open(path, encoding="utf-8", errors="replace") as f:
            lines = deque(f, maxlen=max(max_lines, 1))
        return "".join(lines)


class LocalArtifactStore(ArtifactStore):
    """Artifact store over a directory. Paths may not escape the root."""

    def __init__(self, root: str | Path = "."):
        self.root = Path(root).resolve()

    def resolve(self, path: str) -> Path:
        target = (self.root / path).resolve()
        if target != self.root and self.root not in target.parents:
            raise ArtifactError(f"Path escapes artifact root: {path}")
        return target

    async def read(self, path: str) -> str:
        target = self.resolve(path)
        try:
            return await asyncio.to_thread(target.read_text, encoding="utf-8")
        except OSError as e:
            raise ArtifactError(f"Cannot read {path}: {e}") from e

    async def write(self, path: str, text: str) -> None:
        target = self.resolve(path)
        try:
            await asyncio.to_thread(self._write_sync, target, text)
        except OSError as e:
            raise ArtifactError(f"Cannot write {path}: {e}") from e
        logger.info(f"Wrote artifact {path}")

    @staticmethod
    def _write_sync(target: Path, text: str) -> None:
        target.parent.mkdir(parents=True, exist_ok=True)
        tmp = target.with_name(target.name + ".autoheal.tmp")
        tmp.write_text(text, encoding="utf-8")
        tmp.replace(target)

    async def exists(self, path: str) -> bool:
        try:
            return self.resolve(path).is_file()
        except ArtifactError:
            return False


class GitArtifactStore(LocalArtifactStore):
    """Local artifact store whose root is a git checkout. commit() adds, commits and pushes."""

    def __init__(self, root: str | Path = ".", push: bool = True, timeout: float = 30.0):
        super().__init__(root)
        self.push = push
        self.timeout = timeout

    async def _git(self, *args: str) -> tuple[int, str]:
        proc = await asyncio.create_subprocess_exec(
            "git",
            *args,
            cwd=str(self.root),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
        )
        try:
            stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            return -1, f"git {args[0]} timed out"
        return proc.returncode, stdout.decode(errors="replace").strip()

    async def commit(self, paths: list[str], message: str) -> bool:
        if not paths:
            return False

        rel_paths = [str(self.resolve(p).relative_to(self.root)) for p in paths]
        code, out = await self._git("add", "--", *rel_paths)
        if code != 0:
            logger.error(f"git add failed: {out}")
            return False

        code, out = await self._git("commit", "-m", message, "--", *rel_paths)
        if code != 0:
            logger.error(f"git commit failed: {out}")
            return False
        logger.info(f"Committed {' '.join(shlex.quote(p) for p in rel_paths)}")

        if self.push:
            code, out = await self._git("push")
            if code != 0:
                logger.error(f"git push failed: {out}")
                return False
        return True


class FileReportingSink(ReportingSink):
    """Appends each report snapshot as one JSON line to a file."""

    name = "file"

    def __init__(self, path: str | Path):
        self.path = Path(path)

    async def push(self, document: dict[str, Any]) -> bool:
        try:
            await asyncio.to_thread(self._append, json.dumps(document, default=str))
        except OSError as e:
            logger.warning(f"Failed to write report to {self.path}: {e}")
            return False
        return True

    def _append(self, line: str) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, "a") as f:
            f.write(line + "\n")


class NullReportingSink(ReportingSink):
    """Discards report snapshots."""

    name = "null"

    async def push(self, document: dict[str, Any]) -> bool:
        return True
