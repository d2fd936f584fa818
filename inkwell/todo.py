"""Todo list tool: batch operations on the active session's todo list."""

import random
import string

from . import fmt
from .messages import TodoItem

MAX_ITEMS = 50
MAX_ITEM_TEXT = 500
ID_LENGTH = 5
VALID_ACTIONS = {"add", "complete", "remove", "update", "list"}

_ID_ALPHABET = string.ascii_lowercase + string.digits


def render_todos(items: list[TodoItem]) -> str:
    if not items:
        return "(Empty todo list)"
    lines = []
    for item in items:
        marker = "x" if item.done else " "
        lines.append(f"- [{marker}] ID:{item.id} {item.text}")
    return "\n".join(lines)


class TodoState:
    """Applies manage_todos calls and writes the result through the session bridge."""

    def __init__(self, sessions, session_id: str | None = None, verbose: bool = False):
        self.sessions = sessions
        self.session_id = session_id
        self.verbose = verbose

    @property
    def items(self) -> list[TodoItem]:
        return list(self.sessions.get(self.session_id).todos)

    def _new_id(self, taken: set[str]) -> str:
        while True:
            candidate = "".join(random.choices(_ID_ALPHABET, k=ID_LENGTH))
            if candidate not in taken:
                return candidate

    def process(self, args: dict) -> str:
        """Handle a todo action. Returns the rendered list or an error string."""
        action = args.get("action", "")
        if action not in VALID_ACTIONS:
            return f"error: invalid action {action!r}, expected one of: {', '.join(sorted(VALID_ACTIONS))}"

        items = [TodoItem(i.id, i.text, i.status) for i in self.items]
        if action == "list":
            return self._response("list", items, [])

        notes: list[str] = []
        if action == "add":
            tasks = args.get("tasks")
            if not isinstance(tasks, list) or not tasks:
                return "error: 'add' requires a non-empty 'tasks' array"
            taken = {i.id for i in items}
            for task in tasks:
                text = str(task).strip()
                if not text:
                    continue
                if len(text) > MAX_ITEM_TEXT:
                    return f"error: task text exceeds {MAX_ITEM_TEXT} character limit, please shorten it"
                if len(items) >= MAX_ITEMS:
                    return f"error: todo list full ({MAX_ITEMS} items max)"
                item = TodoItem(self._new_id(taken), text)
                taken.add(item.id)
                items.append(item)
                if self.verbose:
                    fmt.todo_change("add", text[:80])
        elif action in ("complete", "remove"):
            ids = args.get("todo_ids")
            if not isinstance(ids, list) or not ids:
                return f"error: '{action}' requires a non-empty 'todo_ids' array"
            by_id = {i.id: i for i in items}
            for todo_id in ids:
                item = by_id.get(todo_id)
                if item is None:
                    notes.append(f"unknown id {todo_id}")
                    continue
                if action == "complete":
                    item.status = "done"
                else:
                    items.remove(item)
                if self.verbose:
                    fmt.todo_change(action, item.text[:80])
        else:
            updates = args.get("updates")
            if not isinstance(updates, list) or not updates:
                return "error: 'update' requires a non-empty 'updates' array"
            by_id = {i.id: i for i in items}
            for update in updates:
                if not isinstance(update, dict):
                    return "error: each update must be an object with an 'id'"
                item = by_id.get(update.get("id"))
                if item is None:
                    notes.append(f"unknown id {update.get('id')}")
                    continue
                if "text" in update:
                    item.text = str(update["text"]).strip()[:MAX_ITEM_TEXT]
                if "status" in update:
                    if update["status"] not in ("pending", "done"):
                        return f"error: invalid status {update['status']!r}, expected pending or done"
                    item.status = update["status"]

        self.sessions.set_todos(items, self.session_id)
        return self._response(action, items, notes)

    def _response(self, action: str, items: list[TodoItem], notes: list[str]) -> str:
        remaining = sum(1 for i in items if not i.done)
        lines = [f"Todo {action}: {len(items)} total, {remaining} remaining"]
        if notes:
            lines.append("Skipped: " + ", ".join(notes))
        lines.append(render_todos(items))
        return "\n".join(lines)

    def summary_line(self) -> str | None:
        items = self.items
        if not items:
            return None
        done = sum(1 for i in items if i.done)
        return f"todo: {done} done, {len(items) - done} remaining"
