from __future__ import annotations

import hashlib
import json
from typing import Iterable

import yaml

from checksync.errors import EncodingError
from checksync.schemas.checks import CheckDocument, CheckEntry

DOCUMENT_MARKER = b"---\n"


def _entry_key(entry: CheckEntry) -> tuple[str, str]:
    # Second element breaks ties between entries sharing a primary URL.
    return entry.primary_url, json.dumps(entry.model_dump(), sort_keys=True)


def build_document(entries: Iterable[CheckEntry]) -> CheckDocument:
    """Assemble a document whose instance order does not depend on input order."""
    return CheckDocument(init_config=[], instances=sorted(entries, key=_entry_key))


def render_document(document: CheckDocument) -> bytes:
    try:
        payload = {
            "init_config": list(document.init_config),
            "instances": [entry.model_dump() for entry in document.instances],
        }
        text = yaml.safe_dump(
            payload,
            default_flow_style=False,
            sort_keys=False,
            allow_unicode=True,
        )
    except (yaml.YAMLError, TypeError, ValueError) as exc:
        raise EncodingError(f"Could not marshal check document: {exc}") from exc
    return DOCUMENT_MARKER + text.encode("utf-8")


def content_digest(data: bytes) -> str:
    return hashlib.md5(data, usedforsecurity=False).hexdigest()
