"""Tests for export functionality."""

import json
from datetime import datetime, timezone

import pytest

from cursor_history.backup import BackupManifest, BackupResult, BackupStats
from cursor_history.core import (
    ChatSession,
    CodeBlock,
    Message,
    SearchResult,
    SearchSnippet,
    SessionUsage,
    TokenUsage,
    Workspace,
)
from cursor_history.errors import ErrorKind, InvalidInputError
from cursor_history.export import (
    backup_result_to_json,
    format_duration,
    format_size,
    format_token_count,
    message_type,
    parse_message_types,
    safe_filename,
    search_results_to_json,
    session_to_json,
    session_to_markdown,
    sessions_to_json,
    workspaces_to_json,
)


@pytest.fixture
def sample_session():
    return ChatSession(
        id="comp-123",
        index=2,
        workspace_id="abc",
        title="Fix authentication bug",
        message_count=4,
        created_at=datetime(2025, 1, 15, 10, 0, 0, tzinfo=timezone.utc),
        last_updated_at=datetime(2025, 1, 15, 11, 0, 0, tzinfo=timezone.utc),
        workspace_path="/Users/test/dev/myapp",
        usage=SessionUsage(total_input_tokens=1500, total_output_tokens=320, context_usage_percent=12.5),
        messages=[
            Message(
                id="m1",
                role="user",
                content="Fix the login bug in auth.ts",
                timestamp=datetime(2025, 1, 15, 10, 0, 0, tzinfo=timezone.utc),
            ),
            Message(
                id="m2",
                role="assistant",
                content="[Tool: Read File]\nFile: auth.ts",
                timestamp=datetime(2025, 1, 15, 10, 0, 10, tzinfo=timezone.utc),
            ),
            Message(
                id="m3",
                role="assistant",
                content="Here's the change:\n\n```typescript\nconst token = await validateToken(input);\n```",
                timestamp=datetime(2025, 1, 15, 10, 0, 30, tzinfo=timezone.utc),
                code_blocks=[CodeBlock("typescript", "const token = await validateToken(input);", 3)],
                token_usage=TokenUsage(1500, 320),
                model="claude-3.5-sonnet",
                duration_ms=2400,
            ),
            Message(
                id="m4",
                role="assistant",
                content="[Error] [Tool: Terminal Command] (error)",
            ),
        ],
    )


class TestMarkdownExport:
    def test_includes_session_title(self, sample_session):
        result = session_to_markdown(sample_session)
        assert result.startswith("# Fix authentication bug\n")

    def test_includes_metadata(self, sample_session):
        result = session_to_markdown(sample_session)
        assert "**Workspace:** /Users/test/dev/myapp" in result
        assert "**Messages:** 4" in result
        assert "**Tokens:** 1.5k in / 320 out" in result
        assert "**Context:** 12.5% used" in result

    def test_includes_messages_with_roles(self, sample_session):
        result = session_to_markdown(sample_session)
        assert "## User (2025-01-15 10:00)" in result
        assert "## Assistant (2025-01-15 10:00)" in result
        assert "```typescript" in result
        assert "_claude-3.5-sonnet · 1.5k in / 320 out · 2.4s_" in result

    def test_message_type_filter(self, sample_session):
        result = session_to_markdown(sample_session, ["user"])
        assert "Fix the login bug" in result
        assert "validateToken" not in result

    def test_empty_messages(self, sample_session):
        sample_session.messages = []
        result = session_to_markdown(sample_session)
        assert "# Fix authentication bug" in result
        assert "**Messages:** 4" in result


class TestJsonExport:
    def test_session_fields(self, sample_session):
        data = json.loads(session_to_json(sample_session))
        assert data["index"] == 2
        assert data["id"] == "comp-123"
        assert data["workspacePath"] == "/Users/test/dev/myapp"
        assert data["createdAt"] == "2025-01-15T10:00:00+00:00"
        assert data["usage"] == {"contextUsagePercent": 12.5, "totalInputTokens": 1500, "totalOutputTokens": 320}
        assert "filter" not in data

    def test_optional_message_fields(self, sample_session):
        messages = json.loads(session_to_json(sample_session))["messages"]
        assert "tokenUsage" not in messages[0]
        assert "model" not in messages[0]
        assert messages[2]["tokenUsage"] == {"inputTokens": 1500, "outputTokens": 320}
        assert messages[2]["model"] == "claude-3.5-sonnet"
        assert messages[2]["durationMs"] == 2400
        assert messages[2]["codeBlocks"] == [
            {"language": "typescript", "content": "const token = await validateToken(input);", "startLine": 3}
        ]

    def test_filter_metadata(self, sample_session):
        data = json.loads(session_to_json(sample_session, ["tool", "error"]))
        assert data["filter"] == ["tool", "error"]
        assert data["filteredMessageCount"] == 2
        assert data["messageCount"] == 4
        assert [m["type"] for m in data["messages"]] == ["tool", "error"]

    def test_sessions_and_workspaces(self, sample_session):
        listing = json.loads(sessions_to_json([sample_session]))
        assert listing["count"] == 1
        assert "messages" not in listing["sessions"][0]
        workspaces = json.loads(workspaces_to_json([Workspace("abc", "/p", 3)]))
        assert workspaces["workspaces"] == [{"id": "abc", "path": "/p", "sessionCount": 3}]

    def test_search_results(self):
        result = SearchResult(
            session_id="s1", index=1, title="T", match_count=2,
            snippets=[SearchSnippet("user", "a fox", [(2, 5)])],
        )
        data = json.loads(search_results_to_json([result, result], "fox"))
        assert data["query"] == "fox"
        assert data["totalMatches"] == 4
        assert data["results"][0]["snippets"][0]["matchPositions"] == [[2, 5]]

    def test_backup_result(self):
        manifest = BackupManifest(
            version="1.0",
            created_at=datetime(2025, 1, 15, tzinfo=timezone.utc),
            stats=BackupStats(1, 2, 3),
        )
        ok = json.loads(backup_result_to_json(BackupResult(True, "/b.zip", manifest, 10)))
        assert ok["manifest"]["stats"]["sessionCount"] == 1
        assert "error" not in ok
        failed = json.loads(backup_result_to_json(
            BackupResult(False, "/b.zip", error="exists", error_kind=ErrorKind.ALREADY_EXISTS)
        ))
        assert failed["errorKind"] == "already_exists"
        assert failed["manifest"] is None


class TestMessageTypes:
    def test_classification(self, sample_session):
        assert [message_type(m) for m in sample_session.messages] == ["user", "tool", "assistant", "error"]
        assert message_type(Message("t", "assistant", "[Thinking]\nhmm")) == "thinking"

    def test_parse(self):
        assert parse_message_types(" User, tool ") == ["user", "tool"]
        assert parse_message_types(None) == []
        with pytest.raises(InvalidInputError):
            parse_message_types("user,bogus")


class TestFormatting:
    @pytest.mark.parametrize("count,expected", [(950, "950"), (12_345, "12.3k"), (1_200_000, "1.2M")])
    def test_token_count(self, count, expected):
        assert format_token_count(count) == expected

    @pytest.mark.parametrize("ms,expected", [(450, "450ms"), (2_500, "2.5s"), (125_000, "2m 5s")])
    def test_duration(self, ms, expected):
        assert format_duration(ms) == expected

    @pytest.mark.parametrize("size,expected", [(512, "512 B"), (2048, "2.0 KB"), (5 * 1024 * 1024, "5.0 MB")])
    def test_size(self, size, expected):
        assert format_size(size) == expected

    def test_safe_filename(self):
        assert safe_filename("Fix: auth/bug?") == "Fix authbug"
        assert safe_filename("???") == "session"
