"""Directory-backed project files: the file-domain boundary used by the tools.

Every operation returns a plain string consumable as tool output. Failures
are strings starting with ``error:``.
"""

from pathlib import Path

MAX_READ_LINES = 300
SHADOW_READ_LINES = 200
MAX_LINE_LENGTH = 2000
MAX_SEARCH_RESULTS = 100
BINARY_CHECK_BYTES = 8 * 1024
INTERNAL_DIR = ".inkwell"


def apply_line_edits(content: str, edits: list[dict]) -> str:
    """Apply line-range replacements, bottom-up so earlier line numbers stay valid.

    Each edit has 1-based ``start_line``/``end_line`` and ``new_content``; an
    empty ``new_content`` deletes the range.
    """
    lines = content.split("\n")
    ordered = sorted(edits, key=lambda e: int(e["start_line"]), reverse=True)
    for edit in ordered:
        start = int(edit["start_line"])
        end = int(edit.get("end_line", start))
        start_idx = min(max(0, start - 1), len(lines))
        delete_count = max(0, end - start + 1)
        new_content = edit.get("new_content") or ""
        if new_content.endswith("\n"):
            new_content = new_content[:-1]
        replacement = new_content.split("\n") if new_content else []
        lines[start_idx : start_idx + delete_count] = replacement
    return "\n".join(lines)


def format_numbered(
    path: str,
    content: str,
    start_line: int = 1,
    end_line: int | None = None,
    *,
    shadow: bool = False,
) -> str:
    lines = content.split("\n")
    total = len(lines)
    start = max(1, start_line)
    default_span = SHADOW_READ_LINES if shadow else MAX_READ_LINES
    end = min(total, end_line if end_line is not None else start + default_span - 1)
    if start > total:
        return f"error: start_line {start} is beyond the end of {path} ({total} lines)"

    body = []
    for number in range(start, end + 1):
        line = lines[number - 1]
        if len(line) > MAX_LINE_LENGTH:
            line = line[:MAX_LINE_LENGTH]
        body.append(f"{number:4d} | {line}")

    header = []
    if shadow:
        header.append("[Shadow Read - Pending Change]")
    header += [
        f"File: {path}",
        f"Total Lines: {total}",
        f"Reading Range: {start} - {end}",
        "---",
    ]
    if shadow:
        footer = "(Content from Pending Approval)"
    elif end < total:
        footer = f"(Read limit reached, use start_line={end + 1} to continue)"
    else:
        footer = "(End of file)"
    return "\n".join(header + body + ["---", footer])


class Workspace:
    """Project files rooted at one directory; paths never escape the root."""

    def __init__(self, root: str | Path):
        self.root = Path(root).resolve()
        if not self.root.is_dir():
            raise ValueError(f"project directory does not exist: {root}")

    def resolve(self, path: str) -> Path:
        """Resolve a project-relative path, rejecting anything outside the root."""
        rel = path.strip().lstrip("/") or "."
        resolved = (self.root / rel).resolve()
        if not resolved.is_relative_to(self.root):
            raise ValueError(
                f"Path {path!r} resolves to {resolved}, which is outside the project"
            )
        if INTERNAL_DIR in resolved.relative_to(self.root).parts:
            raise ValueError(f"Path {path!r} is reserved for inkwell's own data")
        return resolved

    def relative(self, path: Path) -> str:
        return path.relative_to(self.root).as_posix()

    def exists(self, path: str) -> bool:
        try:
            return self.resolve(path).exists()
        except ValueError:
            return False

    def is_file(self, path: str) -> bool:
        try:
            return self.resolve(path).is_file()
        except ValueError:
            return False

    def read_text(self, path: str) -> str | None:
        """Raw committed content, or None when the file does not exist."""
        try:
            resolved = self.resolve(path)
        except ValueError:
            return None
        if not resolved.is_file():
            return None
        with open(resolved, "rb") as f:
            chunk = f.read(BINARY_CHECK_BYTES)
        if b"\x00" in chunk:
            return None
        return resolved.read_text(encoding="utf-8", errors="replace")

    # -- Tool-facing operations -----------------------------------------------

    def read_file(self, path: str, start_line: int = 1, end_line: int | None = None) -> str:
        try:
            resolved = self.resolve(path)
        except ValueError as exc:
            return f"error: {exc}"
        if not resolved.exists():
            return f"error: file not found: {path}"
        if resolved.is_dir():
            return f"error: {path} is a directory, use list_files instead"
        content = self.read_text(path)
        if content is None:
            return f"error: binary file detected: {path}"
        return format_numbered(self.relative(resolved), content, start_line, end_line)

    def write(self, path: str, content: str) -> str:
        """Create or overwrite a file, creating parent folders as needed."""
        try:
            resolved = self.resolve(path)
        except ValueError as exc:
            return f"error: {exc}"
        if resolved.is_dir():
            return f"error: {path} is a directory"
        data = content.encode("utf-8")
        try:
            resolved.parent.mkdir(parents=True, exist_ok=True)
            resolved.write_bytes(data)
        except OSError as exc:
            return f"error: cannot write {path}: {exc}"
        return f"Wrote {len(data)} bytes to {self.relative(resolved)}"

    def delete(self, path: str) -> str:
        try:
            resolved = self.resolve(path)
        except ValueError as exc:
            return f"error: {exc}"
        if resolved == self.root:
            return "error: cannot delete the project root"
        if not resolved.exists():
            return f"error: file not found: {path}"
        try:
            if resolved.is_dir():
                if any(resolved.iterdir()):
                    return f"error: folder is not empty: {path}"
                resolved.rmdir()
            else:
                resolved.unlink()
        except OSError as exc:
            return f"error: cannot delete {path}: {exc}"
        return f"Deleted {self.relative(resolved)}"

    def rename(self, path: str, new_name: str) -> str:
        """Rename a file or folder in place; new_name is a bare name, not a path."""
        if not new_name or "/" in new_name or "\\" in new_name or new_name in (".", ".."):
            return f"error: invalid new name {new_name!r}"
        try:
            resolved = self.resolve(path)
        except ValueError as exc:
            return f"error: {exc}"
        if not resolved.exists():
            return f"error: file not found: {path}"
        if resolved == self.root:
            return "error: cannot rename the project root"
        target = resolved.with_name(new_name)
        if target.exists():
            return f"error: {self.relative(target)} already exists"
        try:
            resolved.rename(target)
        except OSError as exc:
            return f"error: cannot rename {path}: {exc}"
        return f"Renamed {self.relative(resolved)} to {self.relative(target)}"

    def _children(self, folder: Path) -> list[Path]:
        children = [c for c in folder.iterdir() if not c.name.startswith(".")]
        # Folders first, then names
        return sorted(children, key=lambda c: (not c.is_dir(), c.name.lower()))

    def list_files(self, path: str = ".", *, folders_only: bool = False) -> str:
        try:
            resolved = self.resolve(path)
        except ValueError as exc:
            return f"error: {exc}"
        if not resolved.is_dir():
            return f"error: not a folder: {path}"

        lines: list[str] = []

        def walk(folder: Path, depth: int) -> None:
            for child in self._children(folder):
                indent = "  " * depth
                if child.is_dir():
                    lines.append(f"{indent}[DIR] {child.name}")
                    walk(child, depth + 1)
                elif not folders_only:
                    lines.append(f"{indent}[FILE] {child.name}")

        walk(resolved, 0)
        if not lines:
            return "(empty)"
        return "\n".join(lines)

    def folder_tree(self) -> str:
        return self.list_files(".", folders_only=True)

    def search(self, query: str) -> str:
        """Case-insensitive match against file names and contents."""
        needle = query.strip().lower()
        if not needle:
            return "error: query must not be empty"
        matches: list[str] = []
        for file in sorted(self.root.rglob("*")):
            rel_parts = file.relative_to(self.root).parts
            if any(part.startswith(".") for part in rel_parts) or not file.is_file():
                continue
            rel = file.relative_to(self.root).as_posix()
            if needle in file.name.lower():
                matches.append(f"{rel} (name match)")
            else:
                content = self.read_text(rel)
                if content is None:
                    continue
                for number, line in enumerate(content.split("\n"), 1):
                    if needle in line.lower():
                        snippet = line.strip()[:120]
                        matches.append(f"{rel}:{number}: {snippet}")
                        break
            if len(matches) >= MAX_SEARCH_RESULTS:
                matches.append(f"(results truncated at {MAX_SEARCH_RESULTS})")
                break
        if not matches:
            return f'No files found matching "{query}".'
        return "\n".join(matches)
