from __future__ import annotations

import enum
import os
from pathlib import Path
from typing import BinaryIO, Optional

from checksync.errors import FileIOError
from checksync.logger import get_logger
from checksync.schemas.checks import CheckDocument
from checksync.services.documents import content_digest, render_document

_logger = get_logger("services.committer")


class CommitResult(str, enum.Enum):
    COMMITTED = "committed"
    UNCHANGED = "unchanged"


class ConfigCommitter:
    """Writes a family's check document to disk only when its content changed.

    The target is opened once and kept open; the digest of what is on disk is
    computed at open time and afterwards tracked in memory. Once a rewrite has
    truncated the file the digest is cleared, so a failed write is repaired by
    the next commit even if it carries the previous content.
    """

    def __init__(self, path: str | Path, *, family: str = "") -> None:
        self.path = Path(path).expanduser()
        self._logger = _logger.bind(family=family) if family else _logger
        self._file: Optional[BinaryIO] = None
        self._digest = ""

    @property
    def digest(self) -> str:
        return self._digest

    @property
    def is_open(self) -> bool:
        return self._file is not None

    def open(self) -> None:
        if self._file is not None:
            return
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd = os.open(self.path, os.O_RDWR | os.O_CREAT, 0o644)
            handle = os.fdopen(fd, "r+b")
        except OSError as exc:
            raise FileIOError(str(self.path), "open", str(exc)) from exc

        existing = handle.read()
        self._digest = content_digest(existing) if existing else ""
        self._file = handle
        self._logger.info(
            "committer.open",
            "Existing file hash",
            path=str(self.path),
            digest=self._digest or "-",
        )

    def close(self) -> None:
        if self._file is None:
            return
        self._file.close()
        self._file = None

    def commit(self, document: CheckDocument) -> CommitResult:
        data = render_document(document)
        return self.commit_bytes(data)

    def commit_bytes(self, data: bytes) -> CommitResult:
        if self._file is None:
            self.open()
        if self._file is None:
            raise FileIOError(str(self.path), "open", "file is not open")

        new_digest = content_digest(data)
        if new_digest == self._digest:
            self._logger.debug("committer.noop", "File hash is the same, NOOP", path=str(self.path))
            return CommitResult.UNCHANGED

        handle = self._file
        old_digest = self._digest
        action = "truncate"
        try:
            handle.seek(0)
            handle.truncate(0)
            # file content no longer matches the tracked digest
            self._digest = ""
            action = "write"
            handle.write(data)
            handle.flush()
            action = "sync"
            os.fsync(handle.fileno())
        except OSError as exc:
            raise FileIOError(str(self.path), action, str(exc)) from exc

        self._logger.info(
            "committer.write",
            "Successfully updated file",
            path=str(self.path),
            old=old_digest or "-",
            new=new_digest,
            bytes=len(data),
        )
        self._digest = new_digest
        return CommitResult.COMMITTED
