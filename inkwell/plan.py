"""Plan notebook: a structured execution plan the user reviews before work starts."""

from dataclasses import dataclass, field
from datetime import datetime

from .messages import new_id
from .store import KeyValueStore

WRITE_ACTIONS = {"create", "append", "update", "replace"}
VALID_ACTIONS = WRITE_ACTIONS | {"list"}


def plan_key(session_id: str) -> str:
    return f"inkwell-plan-{session_id}"


@dataclass
class PlanLine:
    id: str
    text: str


@dataclass
class PlanNote:
    title: str
    id: str = field(default_factory=new_id)
    status: str = "draft"
    lines: list[PlanLine] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "status": self.status,
            "lines": [{"id": line.id, "text": line.text} for line in self.lines],
        }

    @classmethod
    def from_dict(cls, data: dict) -> "PlanNote":
        return cls(
            id=data["id"],
            title=data["title"],
            status=data.get("status", "draft"),
            lines=[PlanLine(line["id"], line["text"]) for line in data.get("lines", [])],
        )

    def render(self) -> str:
        body = "\n".join(f"- [ID:{line.id}] {line.text}" for line in self.lines)
        return f"Plan \"{self.title}\"\nStatus: {self.status}\n\n{body or '(empty)'}"


def _new_lines(texts) -> list[PlanLine]:
    return [PlanLine(new_id()[:6], str(text)) for text in texts]


class PlanNotebook:
    """One plan note per session, stored in the key-value store."""

    def __init__(self, store: KeyValueStore, session_id: str):
        self.store = store
        self.session_id = session_id

    def load(self) -> PlanNote | None:
        raw = self.store.get(plan_key(self.session_id))
        return PlanNote.from_dict(raw) if raw else None

    def save(self, note: PlanNote) -> None:
        self.store.put(plan_key(self.session_id), note.to_dict())

    def process(self, args: dict, plan_mode: bool) -> str:
        action = args.get("action", "")
        if action not in VALID_ACTIONS:
            return f"error: invalid action {action!r}, expected one of: {', '.join(sorted(VALID_ACTIONS))}"
        if action in WRITE_ACTIONS and not plan_mode:
            return (
                "error: the plan notebook is read-only outside plan mode. "
                "Use action 'list', or ask the user to enable plan mode."
            )

        note = self.load()
        lines = args.get("lines")

        if action == "create":
            title = args.get("title") or f"Plan - {datetime.now():%m-%d %H:%M}"
            note = PlanNote(title=title)
            if lines:
                note.lines = _new_lines(lines)
            self.save(note)
            return (
                f"Created plan \"{title}\" with {len(note.lines)} lines. "
                "The user can now review it; wait for approval before executing."
            )

        if note is None:
            if action == "list":
                return "(No active plan)"
            return "error: no active plan, use action 'create' first"

        if action == "list":
            return note.render()

        if action == "append":
            if not lines:
                return "error: 'append' requires a non-empty 'lines' array"
            note.lines.extend(_new_lines(lines))
            self.save(note)
            return f"Appended {len(lines)} lines to the plan"

        if action == "update":
            line_ids = args.get("line_ids") or []
            contents = args.get("new_content") or []
            if not line_ids or len(line_ids) != len(contents):
                return "error: 'update' requires 'line_ids' and 'new_content' arrays of equal length"
            by_id = {line.id: line for line in note.lines}
            missing = [lid for lid in line_ids if lid not in by_id]
            if missing:
                return f"error: unknown line ids: {', '.join(missing)}"
            for lid, text in zip(line_ids, contents):
                by_id[lid].text = str(text)
            self.save(note)
            return f"Updated {len(line_ids)} lines"

        # replace
        if lines is None:
            return "error: 'replace' requires a 'lines' array"
        note.lines = _new_lines(lines)
        note.status = "draft"
        self.save(note)
        return f"Replaced the plan content, {len(note.lines)} lines. The user can now review it."

    def approve(self) -> bool:
        note = self.load()
        if note is None:
            return False
        note.status = "approved"
        self.save(note)
        return True
