"""System prompt construction: template, project context and AGENT.md."""

import re
from datetime import date
from pathlib import Path

from . import fmt
from .messages import ProjectMeta, TodoItem
from .workspace import Workspace

DEFAULT_SYSTEM_PROMPT_FILE = Path(__file__).parent / "system_prompt.txt"
MAX_INSTRUCTIONS_CHARS = 10_000
INSTRUCTIONS_FILE = "AGENT.md"
_PLACEHOLDER_RE = re.compile(r"\{(project|file_tree|todos|mode|date)\}")

PLAN_MODE_TEXT = (
    "plan (read-only: research, then write a plan with manage_plan_note and "
    "wait for the author to approve it)"
)
NORMAL_MODE_TEXT = "normal (all tools available, writes need approval)"


def load_instructions(workspace: Workspace, verbose: bool = False) -> str:
    """Load AGENT.md from the project root wrapped in XML tags, or "" if absent."""
    path = workspace.root / INSTRUCTIONS_FILE
    if not path.is_file():
        return ""
    try:
        file_size = path.stat().st_size
        with path.open(encoding="utf-8", errors="replace") as f:
            content = f.read(MAX_INSTRUCTIONS_CHARS + 1)
    except OSError:
        return ""
    if len(content) > MAX_INSTRUCTIONS_CHARS:
        content = (
            content[:MAX_INSTRUCTIONS_CHARS]
            + f"\n[truncated: {INSTRUCTIONS_FILE} exceeds {MAX_INSTRUCTIONS_CHARS} character limit]"
        )
    if verbose:
        fmt.info(f"Loaded {INSTRUCTIONS_FILE} ({file_size} bytes) from {path.parent}")
    return f"<agent-instructions>\n{content}\n</agent-instructions>"


def describe_project(project: ProjectMeta | None) -> str:
    if project is None:
        return "(no active project)"
    lines = [f"Title: {project.name}"]
    lines.append(f"Genre: {project.genre or 'undecided'}")
    if project.target_chapters:
        lines.append(f"Target: {project.target_chapters} chapters")
    if project.words_per_chapter:
        lines.append(f"Words per chapter: {project.words_per_chapter}")
    lines.append(f"Premise: {project.description or '(none yet)'}")
    return "\n".join(lines)


def describe_todos(todos: list[TodoItem]) -> str:
    pending = [t for t in todos if not t.done]
    if not pending:
        return "(no pending todos)"
    return "\n".join(f"- [ID:{t.id}] {t.text}" for t in pending)


def build_system_prompt(
    workspace: Workspace,
    project: ProjectMeta | None = None,
    todos: list[TodoItem] | None = None,
    plan_mode: bool = False,
    instructions: str = "",
    template: str | None = None,
) -> str:
    """Fill the prompt template and append project instructions.

    ``template`` replaces the packaged default when given. Placeholders are
    substituted in one pass so braces in project data are left alone.
    """
    if template is None:
        template = DEFAULT_SYSTEM_PROMPT_FILE.read_text(encoding="utf-8")
    values = {
        "project": describe_project(project),
        "file_tree": workspace.folder_tree(),
        "todos": describe_todos(todos or []),
        "mode": PLAN_MODE_TEXT if plan_mode else NORMAL_MODE_TEXT,
        "date": date.today().isoformat(),
    }
    prompt = _PLACEHOLDER_RE.sub(lambda m: values[m.group(1)], template).strip()
    if instructions:
        prompt += "\n\n" + instructions
    return prompt
