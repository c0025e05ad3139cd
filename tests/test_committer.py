from __future__ import annotations

import os

import pytest

from checksync.errors import FileIOError
from checksync.schemas.checks import PhpFpmCheck
from checksync.services import committer as committer_module
from checksync.services.committer import CommitResult, ConfigCommitter
from checksync.services.documents import build_document, content_digest, render_document


def _document(*projects: str):
    return build_document(
        PhpFpmCheck(
            status_url=f"http://10.0.0.1:4000/php-fpm/{name}/10.0.0.1/9000/status",
            ping_url=f"http://10.0.0.1:4000/php-fpm/{name}/10.0.0.1/9000/ping",
            tags=[f"project:{name}"],
        )
        for name in projects
    )


def test_same_document_is_written_once(tmp_path, monkeypatch):
    path = tmp_path / "php_fpm.yaml"
    committer = ConfigCommitter(path)
    committer.open()

    writes: list[int] = []
    real_fsync = os.fsync

    def counting_fsync(fd: int) -> None:
        writes.append(fd)
        real_fsync(fd)

    monkeypatch.setattr(committer_module.os, "fsync", counting_fsync)

    document = _document("web")
    assert committer.commit(document) is CommitResult.COMMITTED
    assert committer.commit(document) is CommitResult.UNCHANGED
    assert len(writes) == 1
    assert path.read_bytes() == render_document(document)
    committer.close()


def test_existing_identical_file_is_not_rewritten(tmp_path):
    path = tmp_path / "php_fpm.yaml"
    document = _document("web")
    path.write_bytes(render_document(document))
    before = path.stat().st_mtime_ns

    committer = ConfigCommitter(path)
    committer.open()
    assert committer.digest == content_digest(render_document(document))
    assert committer.commit(document) is CommitResult.UNCHANGED
    assert path.stat().st_mtime_ns == before
    committer.close()


def test_shorter_document_truncates_previous_content(tmp_path):
    path = tmp_path / "php_fpm.yaml"
    committer = ConfigCommitter(path)
    committer.commit(_document("web", "shop", "api"))
    smaller = _document("web")
    assert committer.commit(smaller) is CommitResult.COMMITTED
    assert path.read_bytes() == render_document(smaller)
    committer.close()


def test_open_creates_missing_parent_and_keeps_existing_content(tmp_path):
    path = tmp_path / "conf.d" / "nested" / "php_fpm.yaml"
    committer = ConfigCommitter(path)
    committer.open()
    assert path.exists()
    assert committer.digest == ""
    assert committer.is_open
    committer.close()
    assert not committer.is_open


def test_failed_sync_after_truncate_is_repaired_by_previous_document(tmp_path, monkeypatch):
    path = tmp_path / "php_fpm.yaml"
    committer = ConfigCommitter(path)
    previous = _document("web")
    committer.commit(previous)

    def broken_fsync(fd: int) -> None:
        raise OSError(5, "Input/output error")

    monkeypatch.setattr(committer_module.os, "fsync", broken_fsync)
    with pytest.raises(FileIOError) as excinfo:
        committer.commit(_document("shop"))
    assert excinfo.value.action == "sync"
    assert committer.digest == ""

    monkeypatch.undo()
    assert committer.commit(previous) is CommitResult.COMMITTED
    assert path.read_bytes() == render_document(previous)
    assert committer.commit(previous) is CommitResult.UNCHANGED
    committer.close()


def test_open_failure_is_reported(tmp_path):
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("x")
    committer = ConfigCommitter(blocker / "php_fpm.yaml")
    with pytest.raises(FileIOError) as excinfo:
        committer.open()
    assert excinfo.value.action == "open"
