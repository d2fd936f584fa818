"""Session/store bridge: the single writer for conversation sessions.

Every mutation goes through ``SessionStore.update`` (directly or through one
of the helpers), which notifies subscribers and schedules a debounced persist
to the key-value store. Persist failures are logged and never retried here.
"""

import logging
import threading
from typing import Callable

from .messages import (
    DEFAULT_TITLE,
    PROJECT_FIELDS,
    ConversationSession,
    ProjectMeta,
    TodoItem,
    UserMessage,
    new_id,
    now_ms,
    title_from_text,
)
from .store import KeyValueStore

logger = logging.getLogger(__name__)

PERSIST_DELAY = 1.0


def sessions_key(project_id: str) -> str:
    return f"inkwell-sessions-{project_id}"


def project_key(project_id: str) -> str:
    return f"inkwell-project-{project_id}"


class SessionStore:
    def __init__(
        self,
        store: KeyValueStore,
        project_id: str,
        *,
        persist_delay: float = PERSIST_DELAY,
    ):
        self.store = store
        self.project_id = project_id
        self.persist_delay = persist_delay
        self.sessions: dict[str, ConversationSession] = {}
        self.current_id: str | None = None
        self.project = ProjectMeta(id=project_id, name=project_id)
        self._lock = threading.RLock()
        self._timer: threading.Timer | None = None
        self._listeners: list[Callable] = []
        self._switch_hooks: list[Callable] = []

    # -- Loading / persistence -------------------------------------------------

    def load(self) -> "SessionStore":
        raw_sessions = self.store.get(sessions_key(self.project_id), []) or []
        raw_project = self.store.get(project_key(self.project_id))
        with self._lock:
            self.sessions = {}
            for data in raw_sessions:
                session = ConversationSession.from_dict(data)
                self.sessions[session.id] = session
            if raw_project:
                self.project = ProjectMeta.from_dict(raw_project)
            ordered = self.list_sessions()
            self.current_id = ordered[0].id if ordered else None
        if self.current_id is None:
            self.create_session()
        return self

    def _persist(self) -> None:
        with self._lock:
            self._timer = None
            payload = [s.to_dict() for s in self.list_sessions()]
            project = self.project.to_dict()
        try:
            self.store.put(sessions_key(self.project_id), payload)
            self.store.put(project_key(self.project_id), project)
        except Exception as e:
            logger.error("failed to persist sessions for %s: %s", self.project_id, e)

    def schedule_persist(self) -> None:
        if self.persist_delay <= 0:
            self._persist()
            return
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
            self._timer = threading.Timer(self.persist_delay, self._persist)
            self._timer.daemon = True
            self._timer.start()

    def flush(self) -> None:
        """Persist immediately, cancelling any pending debounce."""
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
        self._persist()

    # -- Observation -----------------------------------------------------------

    def subscribe(self, listener: Callable) -> Callable:
        """Register listener(session, event); returns an unsubscribe callable."""
        self._listeners.append(listener)
        return lambda: self._listeners.remove(listener)

    def on_switch(self, hook: Callable) -> None:
        self._switch_hooks.append(hook)

    def _notify(self, session: ConversationSession, event: str) -> None:
        for listener in list(self._listeners):
            listener(session, event)

    # -- Core single-writer update ---------------------------------------------

    @property
    def current(self) -> ConversationSession:
        with self._lock:
            if self.current_id is None:
                raise KeyError("no active session")
            return self.sessions[self.current_id]

    def get(self, session_id: str | None = None) -> ConversationSession:
        with self._lock:
            sid = session_id or self.current_id
            if sid not in self.sessions:
                raise KeyError(f"unknown session {sid!r}")
            return self.sessions[sid]

    def update(
        self,
        fn: Callable[[ConversationSession], object],
        session_id: str | None = None,
        event: str = "updated",
    ):
        with self._lock:
            session = self.get(session_id)
            result = fn(session)
            session.last_modified = now_ms()
        self._notify(session, event)
        self.schedule_persist()
        return result

    # -- Session lifecycle -----------------------------------------------------

    def list_sessions(self) -> list[ConversationSession]:
        with self._lock:
            return sorted(
                self.sessions.values(), key=lambda s: s.last_modified, reverse=True
            )

    def create_session(self, title: str = DEFAULT_TITLE) -> ConversationSession:
        session = ConversationSession(
            id=new_id(), project_id=self.project_id, title=title
        )
        with self._lock:
            self.sessions[session.id] = session
        self.switch_session(session.id)
        self.schedule_persist()
        return session

    def switch_session(self, session_id: str) -> ConversationSession:
        with self._lock:
            if session_id not in self.sessions:
                raise KeyError(f"unknown session {session_id!r}")
            self.current_id = session_id
            session = self.sessions[session_id]
        for hook in list(self._switch_hooks):
            hook(session)
        self._notify(session, "switched")
        return session

    def delete_session(self, session_id: str) -> None:
        with self._lock:
            removed = self.sessions.pop(session_id, None)
            was_current = session_id == self.current_id
        if removed is None:
            return
        if was_current:
            remaining = self.list_sessions()
            if remaining:
                self.switch_session(remaining[0].id)
            else:
                self.current_id = None
                self.create_session()
        self.schedule_persist()

    # -- Message helpers -------------------------------------------------------

    def add_message(self, message, session_id: str | None = None):
        def apply(session: ConversationSession):
            session.messages.append(message)
            if (
                isinstance(message, UserMessage)
                and session.title == DEFAULT_TITLE
                and sum(isinstance(m, UserMessage) for m in session.messages) == 1
            ):
                session.title = title_from_text(message.text)
            return message

        return self.update(apply, session_id, event="message_added")

    def edit_message_text(
        self, message_id: str, text: str, session_id: str | None = None
    ) -> bool:
        def apply(session: ConversationSession) -> bool:
            msg = session.find(message_id)
            if msg is None:
                return False
            msg.text = text
            return True

        return self.update(apply, session_id, event="message_edited")

    def update_message_metadata(
        self, message_id: str, updates: dict, session_id: str | None = None
    ) -> bool:
        def apply(session: ConversationSession) -> bool:
            msg = session.find(message_id)
            if msg is None:
                return False
            msg.metadata.update(updates)
            return True

        return self.update(apply, session_id, event="message_edited")

    def delete_messages_from(
        self, message_id: str, inclusive: bool = True, session_id: str | None = None
    ) -> int:
        """Truncate the conversation at message_id. Returns the number removed."""

        def apply(session: ConversationSession) -> int:
            for i, msg in enumerate(session.messages):
                if msg.id == message_id:
                    cut = i if inclusive else i + 1
                    removed = len(session.messages) - cut
                    del session.messages[cut:]
                    return removed
            return 0

        return self.update(apply, session_id, event="messages_deleted")

    def set_todos(self, todos: list[TodoItem], session_id: str | None = None) -> None:
        def apply(session: ConversationSession) -> None:
            session.todos = list(todos)

        self.update(apply, session_id, event="todos")

    # -- Project metadata ------------------------------------------------------

    def update_project(self, updates: dict) -> list[str]:
        """Apply known project fields; returns the names that changed."""
        changed = []
        with self._lock:
            for key, value in updates.items():
                if key in PROJECT_FIELDS and getattr(self.project, key) != value:
                    setattr(self.project, key, value)
                    changed.append(key)
            if changed:
                self.project.last_modified = now_ms()
        if changed:
            self.schedule_persist()
        return changed
