"""
Immutable revision storage for workflow documents.

Each revision of a document is stored once under its content hash:

    <revisions_dir>/<document>/<sha256>.yaml
    <revisions_dir>/<document>/HEAD            current digest
    <revisions_dir>/<document>/history.jsonl   one line per baseline/commit/rollback

The first commit of a document that already exists on disk records the
existing content as a `baseline` revision, so that change can be undone.

Publishing a revision rewrites the live document through a temp file and
`os.replace`, so readers see either the previous or the new file.
"""

import hashlib
import json
import logging
import os
import re
import tempfile
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml

from workflow_runtime.errors import DocumentNotFoundError, WorkflowError
from workflow_runtime.types import utc_timestamp

logger = logging.getLogger(__name__)

HEAD_FILE = "HEAD"
HISTORY_FILE = "history.jsonl"


def atomic_write_text(path: Union[str, Path], content: str) -> None:
    """Write `content` to a sibling temp file, then replace `path` with it."""
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    fd, temp_path = tempfile.mkstemp(dir=target.parent, prefix=f".{target.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
        os.replace(temp_path, target)
    except BaseException:
        if os.path.exists(temp_path):
            os.unlink(temp_path)
        raise


def content_digest(content: str) -> str:
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


@dataclass
class Revision:
    """One entry of a document's revision history."""

    document: str
    digest: str
    action: str
    created_at: str
    message: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class RevisionStore:
    """Content-addressed revisions with a movable HEAD per document."""

    def __init__(self, revisions_dir: Union[str, Path], loader=None):
        self.revisions_dir = Path(revisions_dir)
        self.loader = loader

    def _document_key(self, document_path: Union[str, Path]) -> str:
        path = Path(document_path)
        path_hash = hashlib.sha256(str(path.resolve()).encode("utf-8")).hexdigest()[:8]
        stem = re.sub(r"[^A-Za-z0-9_.-]", "_", path.stem)
        return f"{stem}-{path_hash}"

    def _document_dir(self, document_path: Union[str, Path]) -> Path:
        return self.revisions_dir / self._document_key(document_path)

    def commit(
        self,
        document_path: Union[str, Path],
        content: Union[str, Dict[str, Any]],
        message: Optional[str] = None,
    ) -> Revision:
        """Store `content` as a new revision, move HEAD and publish it."""
        if isinstance(content, dict):
            content = yaml.safe_dump(content, sort_keys=False, allow_unicode=True)
        if not isinstance(content, str):
            raise WorkflowError(f"Revision content must be text or a mapping, got {type(content).__name__}")

        digest = content_digest(content)
        if self.head(document_path) is None:
            self._record_baseline(document_path, digest)
        self._store_snapshot(document_path, digest, content)

        revision = Revision(
            document=str(document_path),
            digest=digest,
            action="commit",
            created_at=utc_timestamp(),
            message=message,
        )
        self._move_head(document_path, revision, content)
        logger.info(f"Committed revision {digest[:12]} of {document_path}")
        return revision

    def _store_snapshot(self, document_path: Union[str, Path], digest: str, content: str) -> None:
        snapshot = self._document_dir(document_path) / f"{digest}.yaml"
        if not snapshot.exists():
            atomic_write_text(snapshot, content)

    def _record_baseline(self, document_path: Union[str, Path], incoming_digest: str) -> None:
        """Keep the hand-written document as the first revision so it can be restored."""
        path = Path(document_path)
        if not path.is_file():
            return
        content = path.read_text(encoding="utf-8")
        digest = content_digest(content)
        if digest == incoming_digest:
            return
        self._store_snapshot(document_path, digest, content)
        revision = Revision(
            document=str(document_path),
            digest=digest,
            action="baseline",
            created_at=utc_timestamp(),
        )
        self._record(document_path, revision)
        logger.debug(f"Recorded baseline {digest[:12]} of {document_path}")

    def head(self, document_path: Union[str, Path]) -> Optional[str]:
        head_file = self._document_dir(document_path) / HEAD_FILE
        if not head_file.exists():
            return None
        return head_file.read_text(encoding="utf-8").strip() or None

    def read(self, document_path: Union[str, Path], digest: Optional[str] = None) -> str:
        """Content of a revision (HEAD when `digest` is omitted)."""
        digest = digest or self.head(document_path)
        if not digest:
            raise DocumentNotFoundError(f"{document_path} (no revisions)")
        snapshot = self._document_dir(document_path) / f"{digest}.yaml"
        if not snapshot.exists():
            raise DocumentNotFoundError(str(snapshot))
        return snapshot.read_text(encoding="utf-8")

    def history(self, document_path: Union[str, Path]) -> List[Revision]:
        history_file = self._document_dir(document_path) / HISTORY_FILE
        if not history_file.exists():
            return []
        revisions = []
        with open(history_file, "r", encoding="utf-8") as f:
            for line in f:
                if line.strip():
                    revisions.append(Revision(**json.loads(line)))
        return revisions

    def rollback(self, document_path: Union[str, Path], digest: Optional[str] = None) -> Revision:
        """Move HEAD back to `digest`, or to the revision before the current one."""
        if digest is None:
            current = self.head(document_path)
            earlier = [
                entry.digest for entry in self.history(document_path) if entry.digest != current
            ]
            if not earlier:
                raise WorkflowError(f"No earlier revision of {document_path} to roll back to")
            digest = earlier[-1]

        content = self.read(document_path, digest)
        revision = Revision(
            document=str(document_path),
            digest=digest,
            action="rollback",
            created_at=utc_timestamp(),
        )
        self._move_head(document_path, revision, content)
        logger.info(f"Rolled back {document_path} to {digest[:12]}")
        return revision

    def _move_head(self, document_path: Union[str, Path], revision: Revision, content: str) -> None:
        atomic_write_text(document_path, content)
        self._record(document_path, revision)
        if self.loader is not None:
            self.loader.invalidate(document_path)

    def _record(self, document_path: Union[str, Path], revision: Revision) -> None:
        document_dir = self._document_dir(document_path)
        atomic_write_text(document_dir / HEAD_FILE, revision.digest)
        with open(document_dir / HISTORY_FILE, "a", encoding="utf-8") as f:
            f.write(json.dumps(revision.to_dict()) + "\n")
