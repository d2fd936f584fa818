"""Pending-change queue for write tools, with shadow reads over unapproved content."""

import logging
import threading
from dataclasses import dataclass, field
from typing import Callable

from .messages import new_id, now_ms
from .store import KeyValueStore
from .workspace import Workspace

logger = logging.getLogger(__name__)

QUEUED_TEMPLATE = (
    "Action queued (ID: {id}). You may proceed with subsequent tasks "
    "assuming this change will be approved."
)


def pending_key(project_id: str) -> str:
    return f"inkwell-pending-{project_id}"


@dataclass
class PendingChange:
    tool_name: str
    args: dict
    file_path: str
    original_content: str | None
    new_content: str | None
    description: str
    id: str = field(default_factory=new_id)
    timestamp: int = field(default_factory=now_ms)

    @property
    def queued_message(self) -> str:
        return QUEUED_TEMPLATE.format(id=self.id)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "tool_name": self.tool_name,
            "args": self.args,
            "file_path": self.file_path,
            "original_content": self.original_content,
            "new_content": self.new_content,
            "description": self.description,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "PendingChange":
        return cls(**data)


def commit_change(change: PendingChange, workspace: Workspace) -> str:
    """Apply an approved change to the real files."""
    if change.tool_name == "rename_file":
        return workspace.rename(change.file_path, change.args["new_name"])
    if change.new_content is None:
        return workspace.delete(change.file_path)
    return workspace.write(change.file_path, change.new_content)


class ApprovalQueue:
    def __init__(
        self,
        workspace: Workspace,
        store: KeyValueStore | None = None,
        project_id: str | None = None,
    ):
        self.workspace = workspace
        self.store = store
        self.project_id = project_id
        self._changes: list[PendingChange] = []
        self._lock = threading.RLock()
        self._listeners: list[Callable] = []

    def load(self) -> "ApprovalQueue":
        if self.store is None or self.project_id is None:
            return self
        raw = self.store.get(pending_key(self.project_id), []) or []
        with self._lock:
            self._changes = [PendingChange.from_dict(c) for c in raw]
        return self

    def subscribe(self, listener: Callable) -> Callable:
        """Register listener(event, change); returns an unsubscribe callable."""
        self._listeners.append(listener)
        return lambda: self._listeners.remove(listener)

    def _changed(self, event: str, change: PendingChange | None) -> None:
        if self.store is not None and self.project_id is not None:
            with self._lock:
                payload = [c.to_dict() for c in self._changes]
            try:
                self.store.put(pending_key(self.project_id), payload)
            except Exception as e:
                logger.error("failed to mirror pending changes: %s", e)
        for listener in list(self._listeners):
            listener(event, change)

    def normalize(self, path: str) -> str:
        try:
            return self.workspace.relative(self.workspace.resolve(path))
        except ValueError:
            return path

    # -- Queue operations ------------------------------------------------------

    def add(self, change: PendingChange) -> PendingChange:
        change.file_path = self.normalize(change.file_path)
        with self._lock:
            self._changes.append(change)
        self._changed("added", change)
        return change

    def get(self, change_id: str) -> PendingChange | None:
        with self._lock:
            for change in self._changes:
                if change.id == change_id:
                    return change
        return None

    def pending(self) -> list[PendingChange]:
        with self._lock:
            return list(self._changes)

    def __len__(self) -> int:
        with self._lock:
            return len(self._changes)

    def _pop(self, change_id: str) -> PendingChange | None:
        with self._lock:
            for i, change in enumerate(self._changes):
                if change.id == change_id:
                    return self._changes.pop(i)
        return None

    def shadow_content(self, path: str) -> str | None:
        """Newest unapproved content for path, or None to read the real file."""
        key = self.normalize(path)
        with self._lock:
            for change in reversed(self._changes):
                if change.file_path == key and change.new_content is not None:
                    return change.new_content
        return None

    def current_content(self, path: str) -> str | None:
        """Content as the agent should see it: shadow first, then committed."""
        shadow = self.shadow_content(path)
        if shadow is not None:
            return shadow
        return self.workspace.read_text(path)

    def approve(self, change_id: str) -> tuple[PendingChange, str] | None:
        """Commit and remove a change. Unknown ids are a no-op returning None.

        A commit that fails with an ``error:`` result leaves the change queued
        so the user can retry or reject it.
        """
        with self._lock:
            change = self.get(change_id)
            if change is None:
                return None
            result = commit_change(change, self.workspace)
            if result.startswith("error:"):
                logger.warning("commit of %s failed: %s", change.id, result)
                return change, result
            self._changes.remove(change)
        logger.info("approved %s (%s): %s", change.id, change.description, result)
        self._changed("approved", change)
        return change, result

    def reject(self, change_id: str) -> PendingChange | None:
        change = self._pop(change_id)
        if change is None:
            return None
        logger.info("rejected %s (%s)", change.id, change.description)
        self._changed("rejected", change)
        return change

    def clear(self) -> None:
        with self._lock:
            had_changes = bool(self._changes)
            self._changes.clear()
        if had_changes:
            self._changed("cleared", None)
