"""Terminal front end: one-shot questions and an interactive REPL."""

import argparse
import logging
import re
import sys
import threading
from importlib import metadata
from pathlib import Path

from . import fmt
from .approval import ApprovalQueue
from .config import (
    _UNSET,
    apply_config_to_args,
    config_to_client_kwargs,
    generate_config,
    load_config,
)
from .engine import AgentEngine, TurnResult
from .llm import PROVIDERS, SAFETY_THRESHOLDS, LLMClient
from .plan import PlanNotebook
from .prompt import load_instructions
from .report import AgentError, write_report
from .session import SessionStore
from .store import JsonFileStore
from .todo import render_todos
from .workspace import INTERNAL_DIR, Workspace

EXIT_CODES = {"completed": 0, "faulted": 1, "ceiling": 2, "busy": 3, "cancelled": 130}


def build_parser():
    """Build and return the argument parser."""
    parser = argparse.ArgumentParser(
        prog="inkwell",
        usage="%(prog)s [options] <question>\n       %(prog)s --repl [options] [question]",
        description="A writing agent for novel projects, with approval-gated file edits "
        "and multi-provider LLM support.",
    )
    parser.add_argument(
        "--version",
        action="store_true",
        help="Print the version and exit.",
    )
    parser.add_argument(
        "question", nargs="?", default=None, help="The request for the agent."
    )
    parser.add_argument(
        "--repl",
        action="store_true",
        help="Start an interactive session instead of answering a single question.",
    )
    parser.add_argument(
        "--project",
        type=str,
        default=".",
        metavar="DIR",
        help="Project directory (default: current directory).",
    )
    parser.add_argument(
        "--init-config",
        action="store_true",
        help="Print a commented config template and exit.",
    )
    parser.add_argument(
        "--project-config",
        action="store_true",
        help="With --init-config, print the project (inkwell.toml) template.",
    )
    parser.add_argument(
        "--provider",
        choices=list(PROVIDERS),
        default=_UNSET,
        help="LLM provider (default: deepseek).",
    )
    parser.add_argument(
        "--model",
        type=str,
        default=_UNSET,
        help="Model identifier (default: the provider's default model).",
    )
    parser.add_argument(
        "--api-key",
        type=str,
        default=_UNSET,
        help="API key for the provider (overrides env var).",
    )
    parser.add_argument(
        "--base-url",
        default=_UNSET,
        help="Server base URL (default: the provider's endpoint).",
    )
    parser.add_argument(
        "--max-output-tokens",
        type=int,
        default=_UNSET,
        help="Maximum output tokens (default: 8192).",
    )
    parser.add_argument(
        "--temperature",
        type=float,
        default=_UNSET,
        help="Sampling temperature (default: provider default).",
    )
    parser.add_argument(
        "--max-loops",
        type=int,
        default=_UNSET,
        help="Maximum agent loop iterations per turn (default: 30).",
    )
    parser.add_argument(
        "--window-size",
        type=int,
        default=_UNSET,
        help="Number of recent messages sent to the model (default: 30).",
    )
    parser.add_argument(
        "--retries",
        type=int,
        default=_UNSET,
        help="Attempts per LLM call for rate limits and server errors (default: 3).",
    )
    parser.add_argument(
        "--retry-delay",
        type=float,
        default=_UNSET,
        help="Initial retry delay in seconds, doubled each attempt (default: 2.0).",
    )
    parser.add_argument(
        "--safety-threshold",
        choices=list(SAFETY_THRESHOLDS),
        default=_UNSET,
        help="Safety filter threshold for Gemini models (default: BLOCK_NONE).",
    )
    parser.add_argument(
        "--reasoning-gate",
        choices=["first_iteration", "until_reasoned", "off"],
        default=_UNSET,
        help="When the think tool must be called first (default: first_iteration).",
    )
    parser.add_argument(
        "--approval",
        choices=["ask", "auto"],
        default=_UNSET,
        help="ask: queue file changes for approval; auto: apply them immediately (default: ask).",
    )
    parser.add_argument(
        "--plan",
        dest="plan_mode",
        action="store_true",
        default=_UNSET,
        help="Start in plan mode (read-only tools plus the plan notebook).",
    )
    parser.add_argument(
        "--system-prompt",
        type=str,
        default=_UNSET,
        help="Replace the default system prompt template.",
    )
    parser.add_argument(
        "--no-instructions",
        action="store_true",
        default=_UNSET,
        help="Don't load AGENT.md from the project directory.",
    )
    parser.add_argument(
        "--report",
        type=str,
        default=None,
        metavar="FILE",
        help="Write a JSON turn report to FILE. Incompatible with --repl.",
    )
    parser.add_argument(
        "-q",
        "--quiet",
        action="store_true",
        default=_UNSET,
        help="Suppress all diagnostics; only print the final answer.",
    )

    color_group = parser.add_mutually_exclusive_group()
    color_group.add_argument(
        "--color",
        action="store_true",
        default=_UNSET,
        help="Force ANSI color even when stderr is not a TTY.",
    )
    color_group.add_argument(
        "--no-color",
        action="store_true",
        default=_UNSET,
        help="Disable ANSI color even when stderr is a TTY.",
    )

    return parser


def project_id_for(root: Path) -> str:
    return re.sub(r"[^A-Za-z0-9._-]", "-", root.name) or "project"


def build_engine(args: argparse.Namespace) -> AgentEngine:
    """Wire the workspace, stores, client and engine from resolved arguments."""
    try:
        workspace = Workspace(args.project)
    except ValueError as e:
        raise AgentError(str(e)) from e
    store = JsonFileStore(workspace.root / INTERNAL_DIR / "store")
    project_id = project_id_for(workspace.root)
    sessions = SessionStore(store, project_id).load()
    queue = ApprovalQueue(workspace, store, project_id).load()
    client = LLMClient(**config_to_client_kwargs(args))
    instructions = ""
    if not args.no_instructions:
        instructions = load_instructions(workspace, verbose=args.verbose)
    if args.verbose:
        fmt.info(f"Project: {workspace.root} ({project_id})")
        fmt.info(f"Model: {client.provider}/{client.model}")
    return AgentEngine(
        client,
        sessions,
        workspace,
        queue,
        max_loops=args.max_loops,
        window_size=args.window_size,
        gate_policy=args.reasoning_gate,
        approval=args.approval,
        plan_mode=args.plan_mode,
        verbose=args.verbose,
        system_prompt=args.system_prompt,
        instructions=instructions,
    )


def main():
    parser = build_parser()
    args = parser.parse_args()

    if args.version:
        try:
            version = metadata.version("inkwell")
        except metadata.PackageNotFoundError:
            version = "unknown"
        print(version)
        sys.exit(0)

    if args.init_config:
        print(generate_config(project=args.project_config))
        sys.exit(0)

    try:
        config = load_config(Path(args.project))
    except AgentError as e:
        fmt.error(str(e))
        sys.exit(1)
    apply_config_to_args(args, config)
    args.verbose = not args.quiet

    if not args.repl and args.question is None:
        parser.error("question is required (or use --repl)")
    if args.report and args.repl:
        parser.error("--report is incompatible with --repl")

    fmt.init(color=args.color, no_color=args.no_color)
    if not args.verbose:
        logging.getLogger("inkwell").setLevel(logging.ERROR)

    try:
        engine = build_engine(args)
    except AgentError as e:
        fmt.error(str(e))
        sys.exit(1)

    try:
        if args.repl:
            repl_loop(engine, args.question)
            code = 0
        else:
            code = run_once(engine, args.question, args.report)
    finally:
        engine.sessions.flush()
    sys.exit(code)


def _show_result(engine: AgentEngine, result: TurnResult) -> None:
    if result.answer and result.outcome in ("completed", "ceiling"):
        fmt.answer(result.answer)
    if result.outcome == "faulted" and not engine.verbose:
        last = engine.sessions.current.messages[-1]
        fmt.error_record(last.text)
    pending = len(engine.queue)
    if pending:
        fmt.info(f"{pending} change(s) awaiting approval, use /pending to review")


def run_turn(engine: AgentEngine, text: str | None) -> TurnResult:
    """Run a turn in a worker thread so Ctrl-C can cancel it cleanly."""
    box: dict = {}

    def target():
        if text is None:
            box["result"] = engine.process_turn()
        else:
            box["result"] = engine.send_message(text)

    worker = threading.Thread(target=target, name="inkwell-turn", daemon=True)
    worker.start()
    while worker.is_alive():
        try:
            worker.join(0.1)
        except KeyboardInterrupt:
            if engine.stop():
                fmt.warning("stopping the current turn...")
    return box.get("result") or TurnResult("faulted")


def run_once(engine: AgentEngine, question: str, report_path: str | None) -> int:
    result = run_turn(engine, question)
    _show_result(engine, result)
    if report_path and result.report is not None:
        write_report(report_path, result.report)
        if engine.verbose:
            fmt.info(f"Report written to {report_path}")
    return EXIT_CODES.get(result.outcome, 1)


# ---------------------------------------------------------------------------
# REPL command helpers
# ---------------------------------------------------------------------------


def _repl_help() -> None:
    fmt.info(
        "Available commands:\n"
        "  /approve ID|all    Apply a pending change\n"
        "  /reject ID|all     Discard a pending change\n"
        "  /pending           List pending changes\n"
        "  /continue          Run the agent again without a new message\n"
        "  /new               Start a new conversation\n"
        "  /sessions          List conversations\n"
        "  /switch ID         Switch to another conversation\n"
        "  /plan [on|off|show|approve]  Toggle or inspect plan mode\n"
        "  /todos             Show the todo list\n"
        "  /window            Show context window and token usage\n"
        "  /help              Show this help message\n"
        "  /exit, /quit       Exit the REPL"
    )


def _resolve_ids(engine: AgentEngine, arg: str) -> list[str]:
    if arg == "all":
        return [c.id for c in engine.queue.pending()]
    return [arg] if arg else []


def _repl_approve(engine: AgentEngine, arg: str, approve: bool) -> None:
    ids = _resolve_ids(engine, arg)
    if not ids:
        fmt.warning(f"usage: /{'approve' if approve else 'reject'} ID|all")
        return
    for change_id in ids:
        if approve:
            change = engine.queue.get(change_id)
            result = engine.approve_change(change_id)
            if result is None:
                fmt.warning(f"no pending change with id {change_id}")
            elif result.startswith("error:"):
                fmt.warning(f"{change_id} is still pending: {result}")
            elif not engine.verbose:
                fmt.approval_result(True, change.description, result)
        else:
            change = engine.reject_change(change_id)
            if change is None:
                fmt.warning(f"no pending change with id {change_id}")
            elif not engine.verbose:
                fmt.approval_result(False, change.description)


def _repl_sessions(engine: AgentEngine) -> None:
    current = engine.sessions.current_id
    lines = []
    for s in engine.sessions.list_sessions():
        marker = "*" if s.id == current else " "
        lines.append(f"{marker} {s.id}  {s.title}  ({len(s.messages)} messages)")
    fmt.info("\n".join(lines))


def _repl_switch(engine: AgentEngine, arg: str) -> None:
    matches = [s.id for s in engine.sessions.list_sessions() if s.id.startswith(arg)]
    if not arg or len(matches) != 1:
        fmt.warning(f"no unique conversation matches {arg!r}")
        return
    session = engine.sessions.switch_session(matches[0])
    fmt.info(f"Switched to {session.id} ({session.title})")


def _repl_plan(engine: AgentEngine, arg: str) -> None:
    if arg == "show":
        notebook = PlanNotebook(engine.sessions.store, engine.sessions.current_id)
        fmt.info(notebook.process({"action": "list"}, plan_mode=False))
        return
    if arg == "approve":
        if engine.approve_plan():
            fmt.info("Plan approved, plan mode off. Use /continue to execute it.")
        else:
            fmt.warning("no plan to approve")
        return
    if arg in ("on", "off"):
        engine.plan_mode = arg == "on"
    elif not arg:
        engine.plan_mode = not engine.plan_mode
    else:
        fmt.warning("usage: /plan [on|off|show|approve]")
        return
    fmt.info(f"Plan mode {'on' if engine.plan_mode else 'off'}")


def _repl_window(engine: AgentEngine) -> None:
    info = engine.window_info()
    usage = engine.token_usage()
    fmt.info(
        f"Messages: {info['total']} total, {info['in_context']} in context, "
        f"{info['dropped']} dropped by repair (window {info['window_size']})"
    )
    fmt.context_stats(
        f"Tokens ({usage['percentage']}% of {usage['limit']})", usage["used"]
    )


def repl_loop(engine: AgentEngine, first_question: str | None = None) -> None:
    """Interactive read-eval-print loop."""
    from prompt_toolkit import PromptSession
    from prompt_toolkit.formatted_text import FormattedText
    from prompt_toolkit.history import FileHistory

    history_path = engine.workspace.root / INTERNAL_DIR / "repl_history"
    history_path.parent.mkdir(parents=True, exist_ok=True)
    session = PromptSession(
        history=FileHistory(str(history_path)),
        enable_history_search=True,
    )

    if engine.verbose:
        fmt.repl_banner()

    if first_question:
        _show_result(engine, run_turn(engine, first_question))

    while True:
        label = "inkwell[plan]> " if engine.plan_mode else "inkwell> "
        try:
            print(file=sys.stderr)
            line = session.prompt(FormattedText([("bold fg:ansigreen", label)]))
        except (EOFError, KeyboardInterrupt):
            print(file=sys.stderr)
            break

        line = line.strip()
        if not line:
            continue
        if line in ("/exit", "/quit"):
            break

        cmd_parts = line.split(None, 1)
        cmd = cmd_parts[0].lower()
        cmd_arg = cmd_parts[1].strip() if len(cmd_parts) > 1 else ""

        if cmd == "/help":
            _repl_help()
        elif cmd == "/approve":
            _repl_approve(engine, cmd_arg, approve=True)
        elif cmd == "/reject":
            _repl_approve(engine, cmd_arg, approve=False)
        elif cmd == "/pending":
            fmt.pending_changes(engine.queue.pending())
        elif cmd == "/continue":
            _show_result(engine, run_turn(engine, None))
        elif cmd == "/new":
            created = engine.sessions.create_session()
            fmt.info(f"New conversation {created.id}")
        elif cmd == "/sessions":
            _repl_sessions(engine)
        elif cmd == "/switch":
            _repl_switch(engine, cmd_arg)
        elif cmd == "/plan":
            _repl_plan(engine, cmd_arg)
        elif cmd == "/todos":
            fmt.info(render_todos(engine.sessions.current.todos))
        elif cmd == "/window":
            _repl_window(engine)
        elif cmd.startswith("/"):
            fmt.warning(f"unknown command {cmd}, type /help for the list")
        else:
            _show_result(engine, run_turn(engine, line))
