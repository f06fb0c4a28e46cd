from __future__ import annotations

import fcntl
import json
import logging
import os
import re
import tempfile
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Iterator

from pydantic import ValidationError

from .canonical import fingerprint
from .errors import CorruptStateError
from .models import NodeState, StackSnapshot

logger = logging.getLogger(__name__)

FORMAT_VERSION = 1
SNAPSHOT_FILENAME = "snapshot.json"

# ---------------------------------------------------------------------------
# File locking helpers
# ---------------------------------------------------------------------------

_LOCK_SUFFIX = ".lock"


@contextmanager
def _locked_file(path: Path) -> Iterator[None]:
    """Acquire an exclusive file lock for the duration of the context.

    Uses a separate .lock sidecar file so the actual data file can be
    atomically replaced via ``os.replace`` without disturbing the lock
    handle.
    """
    lock_path = path.with_suffix(path.suffix + _LOCK_SUFFIX)
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    with lock_path.open("a+", encoding="utf-8") as lock_handle:
        fcntl.flock(lock_handle.fileno(), fcntl.LOCK_EX)
        try:
            yield
        finally:
            fcntl.flock(lock_handle.fileno(), fcntl.LOCK_UN)


def _atomic_write_text(path: Path, content: str) -> None:
    """Write *content* to *path* atomically.

    Writes to a temporary file in the same directory, then renames
    (``os.replace``) into place.  A crash mid-write leaves the previous
    file untouched.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(
        dir=str(path.parent),
        prefix=f".{path.name}.",
        suffix=".tmp",
    )
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


def _safe_stack_name(stack: str) -> str:
    safe = re.sub(r"[^A-Za-z0-9_.-]+", "-", stack.strip()).strip("-.")
    if not safe:
        raise ValueError(f"stack name must contain filesystem-safe characters, got {stack!r}")
    return safe


# ---------------------------------------------------------------------------
# StackStateStore
# ---------------------------------------------------------------------------

class StackStateStore:
    """Filesystem store for one stack's snapshot and its revision history.

    Every snapshot is wrapped in a versioned envelope carrying a sha256
    checksum of the canonical JSON payload. Writes are atomic and guarded by an
    ``fcntl`` sidecar lock so concurrent processes sharing a state root do not
    race. The envelope being replaced is archived under ``history/`` so that a
    rollback can reapply it.
    """

    def __init__(self, root: Path, stack: str, *, history_limit: int = 20) -> None:
        if history_limit < 1:
            raise ValueError(f"history_limit must be >= 1, got: {history_limit}")
        self.root = Path(root)
        self.stack = stack
        self.history_limit = history_limit
        self.stack_dir = self.root / "stacks" / _safe_stack_name(stack)
        self.history_dir = self.stack_dir / "history"

    @property
    def snapshot_path(self) -> Path:
        return self.stack_dir / SNAPSHOT_FILENAME

    # ------------------------------------------------------------------
    # Envelope encoding
    # ------------------------------------------------------------------

    def _envelope(self, snapshot: StackSnapshot) -> dict[str, Any]:
        payload = snapshot.model_dump(mode="json")
        return {
            "format_version": FORMAT_VERSION,
            "stack": snapshot.stack,
            "serial": snapshot.serial,
            "checksum": fingerprint(payload),
            "snapshot": payload,
        }

    def _decode(self, path: Path, text: str) -> StackSnapshot:
        try:
            envelope = json.loads(text)
        except json.JSONDecodeError as exc:
            raise CorruptStateError(path, f"invalid JSON ({exc.msg} at line {exc.lineno})") from exc
        if not isinstance(envelope, dict):
            raise CorruptStateError(path, "envelope is not a JSON object")

        version = envelope.get("format_version")
        if version != FORMAT_VERSION:
            raise CorruptStateError(path, f"unsupported format_version {version!r}")
        payload = envelope.get("snapshot")
        if not isinstance(payload, dict):
            raise CorruptStateError(path, "missing snapshot payload")
        expected = envelope.get("checksum")
        actual = fingerprint(payload)
        if expected != actual:
            raise CorruptStateError(path, f"checksum mismatch (expected {expected}, computed {actual})")

        try:
            snapshot = StackSnapshot.model_validate(payload)
        except ValidationError as exc:
            raise CorruptStateError(path, f"snapshot failed validation: {exc}") from exc
        if snapshot.stack != self.stack:
            raise CorruptStateError(path, f"snapshot belongs to stack {snapshot.stack!r}, not {self.stack!r}")
        return snapshot

    def _read(self, path: Path) -> StackSnapshot:
        try:
            text = path.read_text(encoding="utf-8")
        except UnicodeDecodeError as exc:
            raise CorruptStateError(path, "contains invalid UTF-8 data") from exc
        if not text.strip():
            raise CorruptStateError(path, "file is empty")
        return self._decode(path, text)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def load(self, *, allow_corrupt: bool = False) -> StackSnapshot:
        """Load the current snapshot, or an empty one on first run.

        Args:
            allow_corrupt: Operator override. Quarantines a corrupt snapshot
                and falls back to the newest valid history revision (or an
                empty snapshot) instead of raising.

        Raises:
            CorruptStateError: If the snapshot cannot be parsed or its
                checksum does not validate and no override was given.
        """
        with _locked_file(self.snapshot_path):
            if not self.snapshot_path.is_file():
                return StackSnapshot.empty(self.stack)
            try:
                return self._read(self.snapshot_path)
            except CorruptStateError as exc:
                if not allow_corrupt:
                    raise
                quarantine = self.snapshot_path.with_name(
                    f"{SNAPSHOT_FILENAME}.corrupt-{datetime.now(UTC).strftime('%Y%m%dT%H%M%S%f')}"
                )
                os.replace(self.snapshot_path, quarantine)
                logger.error("Quarantined corrupt state for stack %s to %s: %s", self.stack, quarantine, exc.reason)

        for serial in reversed(self.list_revisions()):
            try:
                snapshot = self.load_revision(serial)
            except CorruptStateError as exc:
                logger.warning("Skipping corrupt history revision %d: %s", serial, exc.reason)
                continue
            logger.warning("Recovered stack %s from history revision %d", self.stack, serial)
            return snapshot
        logger.warning("No valid history for stack %s; continuing from an empty snapshot", self.stack)
        return StackSnapshot.empty(self.stack)

    def save(self, snapshot: StackSnapshot) -> Path:
        """Persist *snapshot* atomically, archiving the envelope it replaces.

        Returns:
            Path to the written snapshot file.
        """
        if snapshot.stack != self.stack:
            raise ValueError(f"snapshot belongs to stack {snapshot.stack!r}, store manages {self.stack!r}")
        content = json.dumps(self._envelope(snapshot), indent=2, sort_keys=True)
        with _locked_file(self.snapshot_path):
            if self.snapshot_path.is_file():
                self._archive_current()
            _atomic_write_text(self.snapshot_path, content)
        logger.info("Saved stack %s at serial %d (%d nodes)", self.stack, snapshot.serial, len(snapshot.nodes))
        return self.snapshot_path

    def get(self, name: str) -> NodeState | None:
        return self.load().get(name)

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------

    def _archive_current(self) -> None:
        text = self.snapshot_path.read_text(encoding="utf-8")
        try:
            previous = self._decode(self.snapshot_path, text)
        except CorruptStateError as exc:
            logger.warning("Not archiving unreadable snapshot for stack %s: %s", self.stack, exc.reason)
            return
        _atomic_write_text(self.history_dir / f"{previous.serial:08d}.json", text)
        revisions = self.list_revisions()
        for serial in revisions[: max(0, len(revisions) - self.history_limit)]:
            (self.history_dir / f"{serial:08d}.json").unlink(missing_ok=True)

    def list_revisions(self) -> list[int]:
        """Return archived snapshot serials, oldest first."""
        if not self.history_dir.is_dir():
            return []
        serials: list[int] = []
        for path in self.history_dir.glob("*.json"):
            if path.stem.isdigit():
                serials.append(int(path.stem))
        return sorted(serials)

    def load_revision(self, serial: int) -> StackSnapshot:
        path = self.history_dir / f"{serial:08d}.json"
        if not path.is_file():
            raise FileNotFoundError(f"history revision {serial} not found for stack {self.stack}: {path}")
        return self._read(path)

    def load_previous(self) -> StackSnapshot | None:
        """Return the newest archived revision, or None when there is no history."""
        revisions = self.list_revisions()
        if not revisions:
            return None
        return self.load_revision(revisions[-1])
