"""Export chat sessions, search results and backup records to Markdown and JSON."""

import json
from datetime import datetime

from .backup import BackupInfo, BackupResult, RestoreResult, ValidationResult
from .core import ChatSession, Message, SearchResult, SessionUsage, Workspace
from .errors import InvalidInputError

MESSAGE_TYPES = ("user", "assistant", "tool", "thinking", "error")


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _dumps(data) -> str:
    return json.dumps(data, indent=2, ensure_ascii=False)


# ── Formatting helpers ───────────────────────────────────────────


def format_token_count(count: int) -> str:
    """Compact token count: 950, 12.3k, 1.2M."""
    if count < 1000:
        return str(count)
    if count < 1_000_000:
        return f"{count / 1000:.1f}k"
    return f"{count / 1_000_000:.1f}M"


def format_duration(ms: int) -> str:
    if ms < 1000:
        return f"{ms}ms"
    if ms < 60_000:
        return f"{ms / 1000:.1f}s"
    minutes, seconds = divmod(ms // 1000, 60)
    return f"{minutes}m {seconds}s"


def format_size(size: int) -> str:
    if size < 1024:
        return f"{size} B"
    if size < 1024 * 1024:
        return f"{size / 1024:.1f} KB"
    if size < 1024 ** 3:
        return f"{size / (1024 * 1024):.1f} MB"
    return f"{size / 1024 ** 3:.1f} GB"


# ── Message types ────────────────────────────────────────────────


def message_type(msg: Message) -> str:
    """Classify a rendered message as user, assistant, tool, thinking or error."""
    if msg.role == "user":
        return "user"
    if msg.content.startswith("[Error]"):
        return "error"
    if msg.content.startswith("[Tool:"):
        return "tool"
    if msg.content.startswith("[Thinking]"):
        return "thinking"
    return "assistant"


def parse_message_types(value: str | None) -> list[str]:
    """Parse a comma-separated ``--only`` value into message types."""
    if not value:
        return []
    types = [t.strip().lower() for t in value.split(",") if t.strip()]
    unknown = [t for t in types if t not in MESSAGE_TYPES]
    if unknown:
        raise InvalidInputError(
            f"Unknown message type(s): {', '.join(unknown)}. Valid: {', '.join(MESSAGE_TYPES)}",
            value=value,
        )
    return types


def filter_messages(messages: list[Message], types: list[str]) -> list[Message]:
    if not types:
        return messages
    return [m for m in messages if message_type(m) in types]


# ── Dict builders (shared with the web server) ───────────────────


def usage_to_dict(usage: SessionUsage | None) -> dict | None:
    if usage is None:
        return None
    fields = {
        "contextTokensUsed": usage.context_tokens_used,
        "contextTokenLimit": usage.context_token_limit,
        "contextUsagePercent": usage.context_usage_percent,
        "totalInputTokens": usage.total_input_tokens,
        "totalOutputTokens": usage.total_output_tokens,
    }
    data = {k: v for k, v in fields.items() if v is not None}
    return data or None


def message_to_dict(msg: Message, include_type: bool = False) -> dict:
    data = {
        "id": msg.id,
        "role": msg.role,
        "content": msg.content,
        "timestamp": _iso(msg.timestamp),
        "codeBlocks": [
            {"language": cb.language, "content": cb.content, "startLine": cb.start_line}
            for cb in msg.code_blocks
        ],
    }
    if include_type:
        data["type"] = message_type(msg)
    if msg.token_usage and (msg.token_usage.input_tokens > 0 or msg.token_usage.output_tokens > 0):
        data["tokenUsage"] = {
            "inputTokens": msg.token_usage.input_tokens,
            "outputTokens": msg.token_usage.output_tokens,
        }
    if msg.model:
        data["model"] = msg.model
    if msg.duration_ms and msg.duration_ms > 0:
        data["durationMs"] = msg.duration_ms
    if msg.context_window_status:
        status = msg.context_window_status
        data["contextWindowStatus"] = {
            "tokensUsed": status.tokens_used,
            "tokenLimit": status.token_limit,
        }
        if status.percentage_remaining is not None:
            data["contextWindowStatus"]["percentageRemaining"] = status.percentage_remaining
    return data


def session_summary_to_dict(session: ChatSession) -> dict:
    return {
        "index": session.index,
        "id": session.id,
        "title": session.title,
        "createdAt": _iso(session.created_at),
        "lastUpdatedAt": _iso(session.last_updated_at),
        "messageCount": session.message_count,
        "workspaceId": session.workspace_id,
        "workspacePath": session.workspace_path,
    }


def session_to_dict(session: ChatSession, message_types: list[str] | None = None) -> dict:
    data = session_summary_to_dict(session)
    messages = session.messages
    if message_types:
        messages = filter_messages(messages, message_types)
        data["filter"] = list(message_types)
        data["filteredMessageCount"] = len(messages)
    usage = usage_to_dict(session.usage)
    if usage:
        data["usage"] = usage
    data["messages"] = [message_to_dict(m, include_type=bool(message_types)) for m in messages]
    return data


def workspace_to_dict(ws: Workspace) -> dict:
    return {"id": ws.id, "path": ws.path, "sessionCount": ws.session_count}


def search_result_to_dict(result: SearchResult) -> dict:
    return {
        "index": result.index,
        "sessionId": result.session_id,
        "title": result.title,
        "workspacePath": result.workspace_path,
        "createdAt": _iso(result.created_at),
        "matchCount": result.match_count,
        "snippets": [
            {"role": s.role, "text": s.text, "matchPositions": [list(p) for p in s.match_positions]}
            for s in result.snippets
        ],
    }


def backup_info_to_dict(info: BackupInfo) -> dict:
    return {
        "path": info.path,
        "filename": info.filename,
        "size": info.size,
        "modifiedAt": _iso(info.modified_at),
        "manifest": info.manifest.to_dict() if info.manifest else None,
    }


# ── JSON ─────────────────────────────────────────────────────────


def session_to_json(session: ChatSession, message_types: list[str] | None = None) -> str:
    """Export a session and its messages as structured JSON."""
    return _dumps(session_to_dict(session, message_types))


def sessions_to_json(sessions: list[ChatSession]) -> str:
    return _dumps({"count": len(sessions), "sessions": [session_summary_to_dict(s) for s in sessions]})


def workspaces_to_json(workspaces: list[Workspace]) -> str:
    return _dumps({"count": len(workspaces), "workspaces": [workspace_to_dict(w) for w in workspaces]})


def search_results_to_json(results: list[SearchResult], query: str) -> str:
    return _dumps({
        "query": query,
        "count": len(results),
        "totalMatches": sum(r.match_count for r in results),
        "results": [search_result_to_dict(r) for r in results],
    })


def export_result_to_json(exported: list[dict]) -> str:
    return _dumps({"count": len(exported), "files": exported})


def backup_result_to_json(result: BackupResult) -> str:
    data = {
        "success": result.success,
        "backupPath": result.backup_path,
        "durationMs": result.duration_ms,
    }
    if result.error:
        data["error"] = result.error
        data["errorKind"] = result.error_kind.value if result.error_kind else None
    data["manifest"] = result.manifest.to_dict() if result.manifest else None
    return _dumps(data)


def restore_result_to_json(result: RestoreResult) -> str:
    data = {
        "success": result.success,
        "targetPath": result.target_path,
        "filesRestored": result.files_restored,
        "warnings": result.warnings,
        "durationMs": result.duration_ms,
    }
    if result.error:
        data["error"] = result.error
        data["errorKind"] = result.error_kind.value if result.error_kind else None
    return _dumps(data)


def validation_result_to_json(result: ValidationResult) -> str:
    return _dumps({
        "status": result.status,
        "manifest": result.manifest.to_dict() if result.manifest else None,
        "validFiles": result.valid_files,
        "corruptedFiles": result.corrupted_files,
        "missingFiles": result.missing_files,
        "errors": result.errors,
    })


def backups_to_json(backups: list[BackupInfo]) -> str:
    return _dumps({"count": len(backups), "backups": [backup_info_to_dict(b) for b in backups]})


# ── Markdown ─────────────────────────────────────────────────────


def _message_meta(msg: Message) -> str:
    parts = []
    if msg.model:
        parts.append(msg.model)
    if msg.token_usage and (msg.token_usage.input_tokens or msg.token_usage.output_tokens):
        parts.append(
            f"{format_token_count(msg.token_usage.input_tokens)} in / "
            f"{format_token_count(msg.token_usage.output_tokens)} out"
        )
    if msg.duration_ms:
        parts.append(format_duration(msg.duration_ms))
    return " · ".join(parts)


def session_to_markdown(session: ChatSession, message_types: list[str] | None = None) -> str:
    """Export a session and its messages as clean Markdown."""
    lines = [f"# {session.title}", ""]

    if session.workspace_path:
        lines.append(f"**Workspace:** {session.workspace_path}")
    if session.created_at:
        lines.append(f"**Created:** {session.created_at.isoformat()}")
    if session.last_updated_at:
        lines.append(f"**Updated:** {session.last_updated_at.isoformat()}")
    lines.append(f"**Messages:** {session.message_count}")
    usage = session.usage
    if usage and (usage.total_input_tokens or usage.total_output_tokens):
        lines.append(
            f"**Tokens:** {format_token_count(usage.total_input_tokens or 0)} in / "
            f"{format_token_count(usage.total_output_tokens or 0)} out"
        )
    if usage and usage.context_usage_percent is not None:
        lines.append(f"**Context:** {usage.context_usage_percent:.1f}% used")
    lines.extend(["", "---", ""])

    for msg in filter_messages(session.messages, message_types or []):
        role_label = msg.role.capitalize()
        ts = ""
        if msg.timestamp:
            ts = f" ({msg.timestamp.strftime('%Y-%m-%d %H:%M')})"
        lines.append(f"## {role_label}{ts}")
        lines.append("")
        meta = _message_meta(msg)
        if meta:
            lines.extend([f"_{meta}_", ""])
        lines.append(msg.content)
        lines.extend(["", "---", ""])

    return "\n".join(lines)


def safe_filename(title: str, max_len: int = 50) -> str:
    """Strip a title down to characters safe in a filename."""
    cleaned = "".join(c if c.isalnum() or c in "-_ " else "" for c in title)[:max_len].strip()
    return cleaned or "session"
