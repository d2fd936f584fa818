"""Tool declarations and their static read/write/meta classification.

Declarations are provider-neutral (name, description, JSON-schema parameters);
the LLM client wraps them in the chat-completions function envelope.
"""

REASONING_TOOL = "think"

READ = "read"
WRITE = "write"
META = "meta"

_THINKING = {
    "type": "string",
    "description": "Why you are making this call and what you expect it to do.",
}

_PATH = {
    "type": "string",
    "description": "Path relative to the project root, e.g. 'chapters/01.md'.",
}


THINK_TOOL = {
    "name": REASONING_TOOL,
    "description": (
        "Structured reasoning step. Call it first when a new request arrives "
        "(mode 'intent'), before risky edits ('plan', 'analyze'), and after "
        "writing prose ('reflect_creative': check tone, style guide, setting "
        "consistency, character voice and outline fit). The result echoes your "
        "confidence: >= 80 act, 60-79 think again, below 60 ask the user."
    ),
    "parameters": {
        "type": "object",
        "properties": {
            "thinking": {
                "type": "string",
                "description": "Context and purpose of this reasoning step.",
            },
            "mode": {
                "type": "string",
                "enum": ["intent", "analyze", "reflect", "plan", "reflect_creative"],
            },
            "content": {
                "type": "string",
                "description": "The reasoning itself, as markdown.",
            },
            "confidence": {"type": "number", "minimum": 0, "maximum": 100},
            "next_action": {
                "type": "string",
                "enum": ["proceed", "think_again", "ask_user"],
            },
        },
        "required": ["thinking", "mode", "content", "confidence", "next_action"],
    },
}

LIST_FILES_TOOL = {
    "name": "list_files",
    "description": (
        "List the project tree as [DIR]/[FILE] lines, indented by depth, "
        "folders first. Use path to list a sub-folder."
    ),
    "parameters": {
        "type": "object",
        "properties": {
            "thinking": _THINKING,
            "path": {
                "type": "string",
                "description": "Folder to list. Defaults to the project root.",
            },
        },
        "required": [],
    },
}

READ_FILE_TOOL = {
    "name": "read_file",
    "description": (
        "Read a file with numbered lines. Reads 300 lines by default; use "
        "start_line/end_line to page. Shows pending (unapproved) content when "
        "a change to the file is queued."
    ),
    "parameters": {
        "type": "object",
        "properties": {
            "thinking": _THINKING,
            "path": _PATH,
            "start_line": {"type": "integer", "minimum": 1, "default": 1},
            "end_line": {"type": "integer", "minimum": 1},
        },
        "required": ["path"],
    },
}

SEARCH_FILES_TOOL = {
    "name": "search_files",
    "description": "Case-insensitive search over file names and file contents.",
    "parameters": {
        "type": "object",
        "properties": {
            "thinking": _THINKING,
            "query": {"type": "string", "description": "Text to look for."},
        },
        "required": ["query"],
    },
}

SEARCH_AGENT_TOOL = {
    "name": "call_search_agent",
    "description": (
        "Delegate a research question to a read-only search assistant that "
        "explores the project and returns a report of relevant passages. Use it "
        "for questions spanning many files (settings, character facts, plot threads)."
    ),
    "parameters": {
        "type": "object",
        "properties": {
            "thinking": _THINKING,
            "request": {
                "type": "string",
                "description": "What to find and why.",
            },
            "focus_paths": {
                "type": "array",
                "items": {"type": "string"},
                "description": "Optional folders or files to start from.",
            },
        },
        "required": ["request"],
    },
}

CREATE_FILE_TOOL = {
    "name": "create_file",
    "description": "Create a new file. Fails if it exists. Queued for user approval.",
    "parameters": {
        "type": "object",
        "properties": {
            "thinking": _THINKING,
            "path": _PATH,
            "content": {"type": "string"},
        },
        "required": ["thinking", "path", "content"],
    },
}

UPDATE_FILE_TOOL = {
    "name": "update_file",
    "description": "Replace the whole content of an existing file. Queued for user approval.",
    "parameters": {
        "type": "object",
        "properties": {
            "thinking": _THINKING,
            "path": _PATH,
            "content": {"type": "string"},
        },
        "required": ["thinking", "path", "content"],
    },
}

PATCH_FILE_TOOL = {
    "name": "patch_file",
    "description": (
        "Replace line ranges in an existing file. Line numbers refer to the "
        "file as read_file shows it; edits are applied bottom-up so they do not "
        "shift each other. An empty new_content deletes the range. Queued for "
        "user approval."
    ),
    "parameters": {
        "type": "object",
        "properties": {
            "thinking": _THINKING,
            "path": _PATH,
            "edits": {
                "type": "array",
                "items": {
                    "type": "object",
                    "properties": {
                        "start_line": {"type": "integer", "minimum": 1},
                        "end_line": {"type": "integer", "minimum": 1},
                        "new_content": {"type": "string"},
                    },
                    "required": ["start_line", "end_line", "new_content"],
                },
            },
        },
        "required": ["thinking", "path", "edits"],
    },
}

RENAME_FILE_TOOL = {
    "name": "rename_file",
    "description": "Rename a file or folder in place. Queued for user approval.",
    "parameters": {
        "type": "object",
        "properties": {
            "thinking": _THINKING,
            "path": _PATH,
            "new_name": {
                "type": "string",
                "description": "New bare name (no slashes).",
            },
        },
        "required": ["thinking", "path", "new_name"],
    },
}

DELETE_FILE_TOOL = {
    "name": "delete_file",
    "description": "Delete a file or an empty folder. Queued for user approval.",
    "parameters": {
        "type": "object",
        "properties": {"thinking": _THINKING, "path": _PATH},
        "required": ["thinking", "path"],
    },
}

UPDATE_PROJECT_META_TOOL = {
    "name": "update_project_meta",
    "description": (
        "Update project settings: book title, description, genre, words per "
        "chapter, target chapter count. Applied immediately."
    ),
    "parameters": {
        "type": "object",
        "properties": {
            "thinking": _THINKING,
            "name": {"type": "string"},
            "description": {"type": "string"},
            "genre": {"type": "string"},
            "words_per_chapter": {"type": "integer", "minimum": 1},
            "target_chapters": {"type": "integer", "minimum": 1},
        },
        "required": ["thinking"],
    },
}

MANAGE_TODOS_TOOL = {
    "name": "manage_todos",
    "description": (
        "Track multi-step work. Batch actions: add (tasks), complete (todo_ids), "
        "remove (todo_ids), update (updates), list. Ids are shown as ID:xxxxx."
    ),
    "parameters": {
        "type": "object",
        "properties": {
            "thinking": _THINKING,
            "action": {
                "type": "string",
                "enum": ["add", "complete", "remove", "update", "list"],
            },
            "tasks": {"type": "array", "items": {"type": "string"}},
            "todo_ids": {"type": "array", "items": {"type": "string"}},
            "updates": {
                "type": "array",
                "items": {
                    "type": "object",
                    "properties": {
                        "id": {"type": "string"},
                        "text": {"type": "string"},
                        "status": {"type": "string", "enum": ["pending", "done"]},
                    },
                    "required": ["id"],
                },
            },
        },
        "required": ["action"],
    },
}

_PLAN_PARAMETERS = {
    "type": "object",
    "properties": {
        "thinking": _THINKING,
        "action": {
            "type": "string",
            "enum": ["create", "append", "update", "replace", "list"],
        },
        "title": {"type": "string", "description": "Plan title (create only)."},
        "lines": {"type": "array", "items": {"type": "string"}},
        "line_ids": {"type": "array", "items": {"type": "string"}},
        "new_content": {"type": "array", "items": {"type": "string"}},
    },
    "required": ["action"],
}


def plan_note_tool(plan_mode: bool) -> dict:
    if plan_mode:
        description = (
            "Manage the plan notebook: create/append/update/replace/list. Use it "
            "for a structured execution plan the user approves, not for scratch notes."
        )
    else:
        description = (
            "View the plan notebook. Only 'list' is available outside plan mode; "
            "ask the user to enable plan mode to edit the plan."
        )
    return {
        "name": "manage_plan_note",
        "description": description,
        "parameters": _PLAN_PARAMETERS,
    }


TOOL_KINDS = {
    "list_files": READ,
    "read_file": READ,
    "search_files": READ,
    "call_search_agent": READ,
    "create_file": WRITE,
    "update_file": WRITE,
    "patch_file": WRITE,
    "rename_file": WRITE,
    "delete_file": WRITE,
    "update_project_meta": WRITE,
    REASONING_TOOL: META,
    "manage_todos": META,
    "manage_plan_note": META,
}

READ_TOOLS = [LIST_FILES_TOOL, READ_FILE_TOOL, SEARCH_FILES_TOOL]
WRITE_TOOLS = [
    CREATE_FILE_TOOL,
    UPDATE_FILE_TOOL,
    PATCH_FILE_TOOL,
    RENAME_FILE_TOOL,
    DELETE_FILE_TOOL,
    UPDATE_PROJECT_META_TOOL,
]


def tool_kind(name: str) -> str | None:
    return TOOL_KINDS.get(name)


def get_tools(plan_mode: bool = False, *, search_agent: bool = True) -> list[dict]:
    """Declarations available in the given mode."""
    tools = [THINK_TOOL, *READ_TOOLS]
    if search_agent:
        tools.append(SEARCH_AGENT_TOOL)
    if not plan_mode:
        tools.extend(WRITE_TOOLS)
    tools.append(MANAGE_TODOS_TOOL)
    tools.append(plan_note_tool(plan_mode))
    return tools


def tool_names(tools: list[dict]) -> set[str]:
    return {t["name"] for t in tools}
