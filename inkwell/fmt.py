"""Rich stderr output for the terminal front end and verbose engine runs."""

from rich.console import Console
from rich.rule import Rule
from rich.text import Text

_console = Console(stderr=True)

PREVIEW_LINES = 3

# outcome -> (mark, style, label)
_OUTCOMES = {
    "completed": ("✓", "bold green", "answered"),
    "ceiling": ("⚠", "bold yellow", "stopped at the loop limit"),
    "cancelled": ("■", "bold yellow", "stopped by the user"),
    "faulted": ("✗", "bold red", "failed"),
}
# tool status -> (mark, style)
_TOOL_STATUS = {
    "executed": ("✓", "green"),
    "queued": ("⏸", "yellow"),
    "failed": ("✗", "red"),
}
_INTERVENTIONS = {
    "gate": "Reasoning gate",
    "guard": "Repeated error",
}
_TODO_MARKS = {"add": "+", "complete": "✓", "remove": "-"}


def init(*, color: bool = False, no_color: bool = False) -> None:
    """Rebuild the stderr console from the --color/--no-color flags."""
    global _console
    kwargs: dict = {"stderr": True}
    if color:
        kwargs["force_terminal"] = True
    if no_color:
        kwargs["no_color"] = True
    _console = Console(**kwargs)


def _plural(n: int, word: str) -> str:
    return f"{n} {word}" if n == 1 else f"{n} {word}s"


# -- Turn progress -----------------------------------------------------------


def loop_header(loop: int, max_loops: int, token_est: int, plan_mode: bool = False) -> None:
    title = f"Loop {loop}/{max_loops}  ~{token_est} tokens"
    if plan_mode:
        title += "  [plan mode]"
    _console.print(Rule(title, style="cyan", align="left"))


def llm_spinner(label: str = "Waiting for the model"):
    return _console.status(f"  {label}", spinner="dots")


def llm_response(elapsed: float, finish_reason: str | None, attempts: int = 1) -> None:
    if finish_reason in ("stop", "tool_calls"):
        style = "green"
    elif finish_reason == "length":
        style = "yellow"
    else:
        style = "red"
    parts = [f"model answered in {elapsed:.1f}s", f"finish={finish_reason}"]
    if attempts > 1:
        parts.append(f"{attempts} attempts")
    _console.print(Text("  " + " | ".join(parts), style=style))


def turn_outcome(loops: int, outcome: str, pending: int = 0) -> None:
    mark, style, label = _OUTCOMES.get(outcome, ("?", "bold red", outcome))
    line = Text(f"  {mark} Turn {label} after {_plural(loops, 'loop')}", style=style)
    if pending:
        line.append(f", {pending} pending approval", style="yellow")
    _console.print(line)


def model_text(text: str) -> None:
    line = Text()
    line.append("  model: ", style="blue")
    line.append(text)
    _console.print(line)


# -- Tools -------------------------------------------------------------------


def tool_call(name: str, args_json: str) -> None:
    _console.print(Text(f"  ▶ {name}", style="bold magenta"))
    for line in args_json.splitlines():
        _console.print(Text(f"    {line}", style="dim"))


def tool_outcome(name: str, status: str, detail: str = "", elapsed: float | None = None) -> None:
    """One line per dispatched call, with a short preview of its result."""
    mark, style = _TOOL_STATUS[status]
    line = Text(f"  {mark} {name}", style=f"bold {style}")
    if elapsed is not None:
        line.append(f"  {elapsed:.1f}s", style=style)
    _console.print(line)
    lines = detail.splitlines()
    for text in lines[:PREVIEW_LINES]:
        _console.print(Text(f"    {text}", style="dim" if status != "failed" else style))
    if len(lines) > PREVIEW_LINES:
        _console.print(Text(f"    ... {len(lines) - PREVIEW_LINES} more lines", style="dim"))


def intervention(kind: str, tool: str, detail: str) -> None:
    line = Text()
    line.append(f"  ⚠ {_INTERVENTIONS[kind]}: ", style="bold yellow")
    line.append(f"{tool}: {detail}", style="yellow")
    _console.print(line)


def think_step(number: int, mode: str, confidence: int, next_action: str, text: str) -> None:
    label = f"  think #{number} {mode} {confidence}%"
    if next_action != "proceed":
        label += f" -> {next_action}"
    line = Text(label, style="yellow")
    line.append(f"  {text}", style="dim italic")
    _console.print(line)


def todo_change(action: str, text: str) -> None:
    line = Text(f"  todo {_TODO_MARKS.get(action, action)} ", style="yellow")
    line.append(text, style="dim italic")
    _console.print(line)


# -- Approvals ---------------------------------------------------------------


def pending_changes(changes: list) -> None:
    """List queued changes with the ids /approve and /reject expect."""
    if not changes:
        _console.print(Text("  No pending changes.", style="dim"))
        return
    _console.print(Text(f"  {_plural(len(changes), 'pending change')}:", style="bold yellow"))
    for change in changes:
        line = Text(f"    [{change.id}] ", style="bold yellow")
        line.append(change.description, style="yellow")
        _console.print(line)


def approval_result(approved: bool, description: str, result: str = "") -> None:
    if not approved:
        line = Text("  ✗ Rejected: ", style="bold red")
        line.append(description, style="red")
    elif result.startswith("error:"):
        line = Text("  ✗ Not applied: ", style="bold red")
        line.append(f"{description} ({result})", style="red")
    else:
        line = Text("  ✓ Approved: ", style="bold green")
        line.append(description, style="green")
        if result:
            line.append(f"  ({result})", style="dim")
    _console.print(line)


# -- Diagnostics -------------------------------------------------------------


def answer(text: str) -> None:
    """Final answer, printed to stdout without styling."""
    Console().print(Text(text))


def info(msg: str) -> None:
    _console.print(Text(f"  {msg}", style="dim"))


def context_stats(label: str, tokens: int) -> None:
    _console.print(Text(f"  {label}: ~{tokens} tokens", style="dim"))


def warning(msg: str) -> None:
    _console.print(Text(f"  ⚠ Warning: {msg}", style="yellow"))


def error(msg: str) -> None:
    line = Text("Error: ", style="bold red")
    line.append(msg, style="red")
    _console.print(line)


def error_record(text: str) -> None:
    """Title in bold, then the message and numbered suggestions."""
    for i, line in enumerate(text.splitlines()):
        _console.print(Text(line, style="bold red" if i == 0 else "red"))


def repl_banner() -> None:
    _console.print(
        Text("Type a request, /help for commands, /exit or Ctrl-D to quit.", style="dim")
    )
