"""Session reconstruction from raw Cursor composer and bubble records.

Cursor stores each conversation as one *composer* record plus one *bubble*
record per message. Neither has a stable schema: message content, tool
invocations, diffs and errors are spread over optional fields whose names and
encodings change between releases (camelCase vs snake_case, JSON-encoded
strings vs objects, inline ``conversation`` arrays in older composers).

Everything here is pure: callers fetch raw records from the stores and hand
them in, which keeps the heuristics testable against fixed fixtures.

Rendering of one bubble concatenates, in order:

1. the tool call (``toolFormerData``), as ``[Tool: <Display Name>]`` + details
2. the plain ``text`` (or the diff it encodes, when it is a JSON diff payload)
3. attached ``codeBlocks`` as fenced blocks
4. the ``thinking`` trace as ``[Thinking]``

and falls back to the longest markdown-looking string in the record when all
of those are empty. ``[Error]`` is prefixed whenever a nested ``status`` field
reads ``"error"``.
"""

import json
import re
from datetime import datetime, timezone

from .core import (
    ChatSession,
    CodeBlock,
    ContextWindowStatus,
    Message,
    SessionUsage,
    TokenUsage,
)
from .debug import NULL_LOG, DebugLog

USER_BUBBLE = 1
ASSISTANT_BUBBLE = 2

TOOL_DISPLAY_NAMES = {
    "read_file": "Read File",
    "write": "Write File",
    "write_file": "Write File",
    "edit_file": "Edit File",
    "search_replace": "Search & Replace",
    "list_dir": "List Directory",
    "grep": "Grep",
    "run_terminal_command": "Terminal Command",
    "execute_command": "Terminal Command",
    "codebase_search": "Search",
    "create_file": "Create File",
}

_WRITE_TOOLS = {"write", "write_file", "create_file"}
_SCOPE_TOOLS = {"grep", "codebase_search"}

PATH_KEYS = ("targetFile", "target_file", "relativeWorkspacePath", "filePath", "file_path", "path")
DIRECTORY_KEYS = ("targetDirectory", "target_directory", "directory", "relativeWorkspacePath", "path")
QUERY_KEYS = ("query", "pattern", "searchTerm", "search_term", "regex")
COMMAND_KEYS = ("command", "cmd")
OLD_STRING_KEYS = ("oldString", "old_string")
NEW_STRING_KEYS = ("newString", "new_string")
CONTENT_KEYS = ("content", "contents", "fileText", "codeEdit", "code_edit")

ERROR_MARKER = "error"
TITLE_MAX_LEN = 80
PREVIEW_CHARS = 500
FALLBACK_MIN_LENGTH = 50
MAX_DEPTH = 8

_HEADING = re.compile(r"(?m)^#{1,6}\s")
_FENCE_OPEN = re.compile(r"^```([^`]*)$")


# ── Small helpers ────────────────────────────────────────────────


def parse_timestamp(value) -> datetime | None:
    """Parse a millisecond epoch (number or digit string) or ISO-8601 string."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        try:
            return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
        except (ValueError, OSError, OverflowError):
            return None
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        if text.isdigit():
            return parse_timestamp(int(text))
        try:
            dt = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError:
            return None
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return dt
    return None


def parse_record(raw) -> dict | None:
    """Return a dict for a raw record given as a dict or a JSON string."""
    if isinstance(raw, dict):
        return raw
    if isinstance(raw, (str, bytes)):
        try:
            data = json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError):
            return None
        return data if isinstance(data, dict) else None
    return None


def _number(value) -> int | float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return value


def _count(value) -> int:
    number = _number(value)
    return int(number) if number is not None and number > 0 else 0


def _first_string(data: dict, keys) -> str | None:
    for key in keys:
        value = data.get(key)
        if isinstance(value, str) and value:
            return value
    return None


def _truncate(text: str, max_len: int) -> str:
    """Truncate text to max_len, adding ellipsis if needed."""
    if len(text) <= max_len:
        return text
    return text[: max_len - 3] + "..."


def _fence(language: str, body: str) -> str:
    return f"```{language}\n{body.rstrip(chr(10))}\n```"


def tool_display_name(name: str) -> str:
    return TOOL_DISPLAY_NAMES.get(name, name)


# ── Token, timing and context extraction ─────────────────────────


def extract_token_usage(bubble: dict) -> TokenUsage | None:
    """Token counts from ``tokenCount`` (camelCase) or ``usage`` (snake_case).

    Returns None unless at least one count is non-zero.
    """
    for container, in_key, out_key in (
        ("tokenCount", "inputTokens", "outputTokens"),
        ("usage", "input_tokens", "output_tokens"),
    ):
        data = bubble.get(container)
        if not isinstance(data, dict):
            continue
        input_tokens = _count(data.get(in_key))
        output_tokens = _count(data.get(out_key))
        if input_tokens or output_tokens:
            return TokenUsage(input_tokens=input_tokens, output_tokens=output_tokens)
    return None


def extract_model_info(bubble: dict) -> str | None:
    info = bubble.get("modelInfo")
    if isinstance(info, dict):
        name = info.get("modelName")
        if isinstance(name, str) and name:
            return name
    return None


def extract_timing_info(bubble: dict) -> int | None:
    """Duration in ms from ``timingInfo``; None when a bound is missing or it is <= 0."""
    timing = bubble.get("timingInfo")
    if not isinstance(timing, dict):
        return None
    start = _number(timing.get("clientStartTime"))
    end = _number(timing.get("clientEndTime"))
    if start is None or end is None:
        return None
    duration = end - start
    return int(duration) if duration > 0 else None


def extract_context_window_status(bubble: dict) -> ContextWindowStatus | None:
    status = bubble.get("contextWindowStatusAtCreation")
    if not isinstance(status, dict):
        return None
    used = _number(status.get("tokensUsed"))
    limit = _number(status.get("tokenLimit"))
    if used is None or limit is None:
        return None
    remaining = _number(status.get("percentageRemainingFloat"))
    if remaining is None:
        remaining = _number(status.get("percentageRemaining"))
    return ContextWindowStatus(
        tokens_used=int(used),
        token_limit=int(limit),
        percentage_remaining=float(remaining) if remaining is not None else None,
    )


def extract_session_usage(composer: dict | None, messages: list[Message]) -> SessionUsage | None:
    """Composer context fields plus per-message token sums; None if nothing is known."""
    usage = SessionUsage()
    if isinstance(composer, dict):
        used = _number(composer.get("contextTokensUsed"))
        limit = _number(composer.get("contextTokenLimit"))
        percent = _number(composer.get("contextUsagePercent"))
        usage.context_tokens_used = int(used) if used is not None else None
        usage.context_token_limit = int(limit) if limit is not None else None
        usage.context_usage_percent = float(percent) if percent is not None else None

    counted = [m.token_usage for m in messages if m.token_usage is not None]
    if counted:
        usage.total_input_tokens = sum(t.input_tokens for t in counted)
        usage.total_output_tokens = sum(t.output_tokens for t in counted)

    if all(value is None for value in vars(usage).values()):
        return None
    return usage


# ── Content rendering ────────────────────────────────────────────


def extract_diff(data: dict) -> str | None:
    """Concatenate ``diff.chunks[].diffString`` if the payload carries a diff."""
    diff = data.get("diff")
    if not isinstance(diff, dict):
        return None
    chunks = diff.get("chunks")
    if not isinstance(chunks, list):
        return None
    parts = [
        chunk["diffString"]
        for chunk in chunks
        if isinstance(chunk, dict) and isinstance(chunk.get("diffString"), str)
    ]
    return "\n".join(parts) if parts else None


def _edit_diff(old: str, new: str) -> str:
    lines = [f"-{line}" for line in old.splitlines()]
    lines.extend(f"+{line}" for line in new.splitlines())
    return "\n".join(lines)


def _format_params(name: str, params: dict, has_diff: bool) -> list[str]:
    lines = []
    if name == "list_dir":
        directory = _first_string(params, DIRECTORY_KEYS)
        if directory:
            lines.append(f"Directory: {directory}")
        return lines

    path = _first_string(params, PATH_KEYS)
    if path:
        label = "Path" if name in _SCOPE_TOOLS else "File"
        lines.append(f"{label}: {path}")
    query = _first_string(params, QUERY_KEYS)
    if query:
        lines.append(f"Query: {query}")
    command = _first_string(params, COMMAND_KEYS)
    if command:
        lines.append(f"Command: {command}")

    old = _first_string(params, OLD_STRING_KEYS)
    new = _first_string(params, NEW_STRING_KEYS)
    if old is not None or new is not None:
        lines.append(_fence("diff", _edit_diff(old or "", new or "")))

    if name in _WRITE_TOOLS and not has_diff:
        content = _first_string(params, CONTENT_KEYS)
        if content:
            lines.append("Content:")
            lines.append(_fence("", _truncate(content, PREVIEW_CHARS)))

    if name not in TOOL_DISPLAY_NAMES and not lines:
        for key, value in params.items():
            if isinstance(value, (str, int, float)) and not isinstance(value, bool):
                lines.append(f"{key}: {_truncate(str(value), 200)}")
    return lines


def _format_result(result: dict | None, raw, diff: str | None) -> list[str]:
    lines = []
    if result is None:
        if isinstance(raw, str) and raw.strip():
            lines.append(f"Result: {_truncate(raw.strip(), PREVIEW_CHARS)}")
        return lines

    if diff:
        lines.append(_fence("diff", diff))
    contents = result.get("contents")
    if isinstance(contents, str) and contents:
        lines.append("Content:")
        lines.append(_fence("", _truncate(contents, PREVIEW_CHARS)))
    output = result.get("output")
    if isinstance(output, str) and output:
        lines.append("Output:")
        lines.append(_fence("", _truncate(output, PREVIEW_CHARS)))
    error = result.get("error")
    if isinstance(error, str) and error:
        lines.append(f"Error: {error}")
    if not lines:
        summary = result.get("resultForModel")
        if isinstance(summary, str) and summary:
            lines.append(f"Result: {_truncate(summary, PREVIEW_CHARS)}")
    return lines


def format_tool_call(tool: dict) -> str:
    """Render a ``toolFormerData`` record; empty string if it names no tool."""
    name = tool.get("name")
    if not isinstance(name, str) or not name:
        return ""

    params = parse_record(tool.get("params")) or parse_record(tool.get("rawArgs")) or {}
    raw_result = tool.get("result")
    result = parse_record(raw_result)
    additional = tool.get("additionalData")
    if not isinstance(additional, dict):
        additional = {}
    diff = extract_diff(result) if result is not None else None

    header = f"[Tool: {tool_display_name(name)}]"
    status = tool.get("status") or additional.get("status")
    if status in ("cancelled", ERROR_MARKER):
        header += f" ({status})"

    lines = [header]
    lines.extend(_format_params(name, params, has_diff=bool(diff)))
    lines.extend(_format_result(result, raw_result, diff))

    decision = additional.get("userDecision") or tool.get("userDecision")
    if isinstance(decision, str) and decision:
        lines.append(f"Decision: {decision}")
    return "\n".join(lines)


def _render_text(text) -> str:
    if not isinstance(text, str) or not text.strip():
        return ""
    stripped = text.strip()
    if stripped.startswith("{"):
        payload = parse_record(stripped)
        if payload is not None:
            diff = extract_diff(payload)
            if diff:
                return _fence("diff", diff)
    return text


def _render_code_blocks(blocks) -> str:
    if not isinstance(blocks, list):
        return ""
    rendered = []
    for block in blocks:
        if not isinstance(block, dict):
            continue
        content = block.get("content")
        if not isinstance(content, str) or not content.strip():
            continue
        language = block.get("languageId") or block.get("language") or ""
        rendered.append(_fence(str(language), content))
    return "\n\n".join(rendered)


def _render_thinking(thinking) -> str:
    if isinstance(thinking, dict):
        thinking = thinking.get("text")
    if isinstance(thinking, str) and thinking.strip():
        return f"[Thinking]\n{thinking.strip()}"
    return ""


def has_error_status(record, depth: int = 0) -> bool:
    """True if any nested ``status`` field equals the error marker."""
    if depth > MAX_DEPTH:
        return False
    if isinstance(record, dict):
        if record.get("status") == ERROR_MARKER:
            return True
        return any(has_error_status(v, depth + 1) for v in record.values())
    if isinstance(record, list):
        return any(has_error_status(v, depth + 1) for v in record)
    return False


def _looks_like_markdown(text: str) -> bool:
    return "```" in text or bool(_HEADING.search(text)) or len(text) >= FALLBACK_MIN_LENGTH


def _is_json_container(text: str) -> bool:
    if not text or text[0] not in "{[":
        return False
    try:
        return isinstance(json.loads(text), (dict, list))
    except json.JSONDecodeError:
        return False


def _iter_strings(node, depth: int):
    if depth > MAX_DEPTH:
        return
    if isinstance(node, str):
        yield node
    elif isinstance(node, dict):
        for value in node.values():
            yield from _iter_strings(value, depth + 1)
    elif isinstance(node, list):
        for value in node:
            yield from _iter_strings(value, depth + 1)


def find_longest_markdown_string(record) -> str | None:
    """Last-resort content: the longest markdown-looking string in the record.

    Strings qualify if they contain a code fence or a heading, or are at
    least FALLBACK_MIN_LENGTH characters long. JSON-encoded containers are
    ignored. Ties keep the first string in depth-first order.
    """
    best = None
    for value in _iter_strings(record, 0):
        text = value.strip()
        if not text or _is_json_container(text) or not _looks_like_markdown(text):
            continue
        if best is None or len(text) > len(best):
            best = text
    return best


def render_content(bubble: dict) -> str:
    """Render one bubble to a single markdown string (may be empty)."""
    parts = []
    tool = bubble.get("toolFormerData")
    if isinstance(tool, dict):
        parts.append(format_tool_call(tool))
    parts.append(_render_text(bubble.get("text")))
    parts.append(_render_code_blocks(bubble.get("codeBlocks")))
    parts.append(_render_thinking(bubble.get("thinking")))

    content = "\n\n".join(p for p in parts if p).strip()
    if not content:
        content = find_longest_markdown_string(bubble) or ""
    if has_error_status(bubble):
        content = f"[Error] {content}".strip()
    return content


def extract_code_blocks(content: str) -> list[CodeBlock]:
    """Return the closed fenced blocks of rendered content."""
    blocks = []
    lines = content.split("\n")
    i = 0
    while i < len(lines):
        match = _FENCE_OPEN.match(lines[i].strip())
        if not match:
            i += 1
            continue
        start = i
        body = []
        i += 1
        while i < len(lines) and lines[i].strip() != "```":
            body.append(lines[i])
            i += 1
        if i >= len(lines):
            break  # unclosed fence
        blocks.append(CodeBlock(
            language=match.group(1).strip(),
            content="\n".join(body),
            start_line=start + 1,
        ))
        i += 1
    return blocks


# ── Session assembly ─────────────────────────────────────────────


def composer_id_of(composer: dict) -> str:
    value = composer.get("composerId") or composer.get("id") or ""
    return str(value)


def header_bubble_ids(composer: dict) -> list[str]:
    """Bubble ids in conversation order, from ``fullConversationHeadersOnly``."""
    headers = composer.get("fullConversationHeadersOnly")
    if not isinstance(headers, list):
        return []
    return [
        h["bubbleId"] for h in headers
        if isinstance(h, dict) and isinstance(h.get("bubbleId"), str)
    ]


def count_composer_messages(composer: dict) -> int:
    """Message count known from the composer record alone, without bubbles."""
    headers = composer.get("fullConversationHeadersOnly")
    if isinstance(headers, list):
        return len(headers)
    conversation = composer.get("conversation")
    if isinstance(conversation, list):
        return len(conversation)
    return 0


def _bubble_id(bubble: dict) -> str | None:
    value = bubble.get("bubbleId")
    return value if isinstance(value, str) and value else None


def order_bubbles(composer: dict, bubbles: list[dict]) -> list[dict]:
    """Order bubbles by the composer's header list; unlisted ones keep store order at the end."""
    order = {bubble_id: pos for pos, bubble_id in enumerate(header_bubble_ids(composer))}
    if not order:
        return bubbles
    fallback = len(order)
    indexed = list(enumerate(bubbles))
    indexed.sort(key=lambda item: (order.get(_bubble_id(item[1]), fallback), item[0]))
    return [bubble for _, bubble in indexed]


def build_message(
    bubble: dict,
    fallback_id: str,
    fallback_time: datetime | None = None,
    log: DebugLog = NULL_LOG,
) -> Message | None:
    """Convert a single parsed bubble into a Message, or None if it is dropped."""
    bubble_id = _bubble_id(bubble) or fallback_id
    kind = bubble.get("type")
    if kind == USER_BUBBLE:
        role = "user"
    elif kind == ASSISTANT_BUBBLE:
        role = "assistant"
    else:
        log.log(f"Skipping bubble {bubble_id}: unknown type {kind!r}")
        return None

    content = render_content(bubble)
    if not content:
        log.log(f"Skipping bubble {bubble_id}: no renderable content")
        return None

    timestamp = parse_timestamp(bubble.get("createdAt") or bubble.get("timestamp"))
    return Message(
        id=str(bubble_id),
        role=role,
        content=content,
        timestamp=timestamp or fallback_time,
        code_blocks=extract_code_blocks(content),
        token_usage=extract_token_usage(bubble),
        model=extract_model_info(bubble),
        duration_ms=extract_timing_info(bubble),
        context_window_status=extract_context_window_status(bubble) if role == "user" else None,
    )


def summarize_composer(
    composer: dict,
    *,
    workspace_id: str,
    workspace_path: str | None = None,
) -> ChatSession:
    """A message-less session summary built from composer metadata alone."""
    created = parse_timestamp(composer.get("createdAt"))
    name = composer.get("name")
    return ChatSession(
        id=composer_id_of(composer),
        title=name.strip() if isinstance(name, str) and name.strip() else "Untitled",
        workspace_id=workspace_id,
        created_at=created,
        last_updated_at=parse_timestamp(composer.get("lastUpdatedAt")) or created,
        workspace_path=workspace_path,
        message_count=count_composer_messages(composer),
    )


def reconstruct(
    raw_composer,
    raw_bubbles,
    *,
    workspace_id: str = "global",
    workspace_path: str | None = None,
    log: DebugLog = NULL_LOG,
) -> ChatSession:
    """Build a normalized ChatSession from one composer and its bubbles.

    Bubbles may be dicts or JSON strings; malformed ones are skipped. When no
    bubbles are given, a legacy inline ``conversation`` array on the composer
    is used instead.
    """
    composer = parse_record(raw_composer) or {}
    session = summarize_composer(composer, workspace_id=workspace_id, workspace_path=workspace_path)

    bubbles = []
    for position, raw in enumerate(raw_bubbles or []):
        bubble = parse_record(raw)
        if bubble is None:
            log.log(f"Skipping malformed bubble #{position} in composer {session.id}")
            continue
        bubbles.append(bubble)
    if not bubbles and isinstance(composer.get("conversation"), list):
        bubbles = [b for b in composer["conversation"] if isinstance(b, dict)]

    messages = []
    for position, bubble in enumerate(order_bubbles(composer, bubbles)):
        message = build_message(
            bubble,
            fallback_id=f"{session.id}-{position}",
            fallback_time=session.created_at,
            log=log,
        )
        if message is not None:
            messages.append(message)

    if session.created_at is None:
        session.created_at = next((m.timestamp for m in messages if m.timestamp), None)
    if session.last_updated_at is None:
        session.last_updated_at = session.created_at

    if session.title == "Untitled":
        first_user = next((m for m in messages if m.role == "user"), None)
        if first_user is not None:
            first_line = first_user.content.strip().splitlines()[0]
            session.title = _truncate(first_line, TITLE_MAX_LEN)

    session.messages = messages
    session.message_count = len(messages)
    session.usage = extract_session_usage(composer, messages)
    return session
