"""Shared test fixtures for cursor-history.

``cursor_data`` builds a synthetic Cursor ``User`` directory:

- workspace ``abc123hash`` (/Users/testuser/dev/my-project), current composer
  format, sessions comp-uuid-001 "Fix auth bug" and comp-uuid-002 "Add dark mode"
- workspace ``def456hash`` (/Users/testuser/dev/other project), legacy list
  format, unnamed session comp-uuid-003 whose bubbles live in the workspace store
- workspace ``empty789`` with no composers (skipped)
- global store with full composer records, bubbles, a global-only session
  comp-uuid-004 and a message-less global record comp-uuid-005

Listing order by last update: 002 (#1), 003 (#2), 001 (#3), 004 (#4).
"""

import json
import sqlite3
from datetime import datetime, timezone

import pytest


def ms(hour: int, minute: int = 0, second: int = 0) -> int:
    return int(datetime(2025, 1, 15, hour, minute, second, tzinfo=timezone.utc).timestamp() * 1000)


def create_store(path, items=None, kv=None, with_kv=True):
    """Create a state.vscdb with ItemTable (and cursorDiskKV) rows, in the given order."""
    path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(path))
    conn.execute("CREATE TABLE ItemTable (key TEXT UNIQUE ON CONFLICT REPLACE, value BLOB)")
    if with_kv:
        conn.execute("CREATE TABLE cursorDiskKV (key TEXT UNIQUE ON CONFLICT REPLACE, value BLOB)")
    for key, value in (items or {}).items():
        conn.execute("INSERT INTO ItemTable VALUES (?, ?)", (key, _encode(value)))
    for key, value in (kv or []):
        conn.execute("INSERT INTO cursorDiskKV VALUES (?, ?)", (key, _encode(value)))
    conn.commit()
    conn.close()
    return path


def _encode(value):
    return value if isinstance(value, (str, bytes)) else json.dumps(value)


def write_workspace_json(ws_dir, folder):
    ws_dir.mkdir(parents=True, exist_ok=True)
    (ws_dir / "workspace.json").write_text(json.dumps({"folder": folder}), encoding="utf-8")


BUBBLES_001 = {
    "b1": {
        "bubbleId": "b1",
        "type": 1,
        "text": "Fix the login authentication bug in auth.ts",
        "createdAt": ms(10, 0, 1),
        "contextWindowStatusAtCreation": {
            "tokensUsed": 5000,
            "tokenLimit": 200000,
            "percentageRemainingFloat": 97.5,
        },
    },
    "b2": {
        "bubbleId": "b2",
        "type": 2,
        "text": "I'll look at the auth module first.",
        "createdAt": ms(10, 0, 5),
        "toolFormerData": {
            "name": "read_file",
            "params": json.dumps({"targetFile": "src/auth.ts"}),
            "status": "completed",
        },
        "tokenCount": {"inputTokens": 1200, "outputTokens": 300},
        "modelInfo": {"modelName": "claude-3.5-sonnet"},
        "timingInfo": {"clientStartTime": 1000, "clientEndTime": 3500},
    },
    "b3": {
        "bubbleId": "b3",
        "type": 2,
        "text": "Here is the fix:\n```ts\nverify(token)\n```",
        "createdAt": ms(10, 1),
        "tokenCount": {"inputTokens": 800, "outputTokens": 150},
    },
    "b4": {
        "bubbleId": "b4",
        "type": 1,
        "text": "Now add error handling for expired tokens",
        "createdAt": ms(10, 30),
    },
}


@pytest.fixture
def cursor_data(tmp_path):
    """Create a synthetic Cursor data root and return its path."""
    root = tmp_path / "User"
    ws_storage = root / "workspaceStorage"

    # Workspace 1: current {"allComposers": [...]} format
    ws1 = ws_storage / "abc123hash"
    write_workspace_json(ws1, "file:///Users/testuser/dev/my-project")
    create_store(ws1 / "state.vscdb", items={
        "composer.composerData": {
            "allComposers": [
                {"composerId": "comp-uuid-001", "name": "Fix auth bug",
                 "createdAt": ms(10), "lastUpdatedAt": ms(11), "unifiedMode": "agent"},
                {"composerId": "comp-uuid-002", "name": "Add dark mode",
                 "createdAt": ms(11, 0, 1), "lastUpdatedAt": ms(14), "unifiedMode": "chat"},
            ],
            "selectedComposerIds": ["comp-uuid-001"],
        },
    })

    # Workspace 2: legacy bare-list format, bubbles kept in the workspace store
    ws2 = ws_storage / "def456hash"
    write_workspace_json(ws2, "file:///Users/testuser/dev/other%20project")
    create_store(
        ws2 / "state.vscdb",
        items={
            "composer.composerData": [
                {"composerId": "comp-uuid-003", "name": "", "createdAt": ms(12), "lastUpdatedAt": ms(12, 30)},
            ],
        },
        kv=[
            ("bubbleId:comp-uuid-003:x1", {"bubbleId": "x1", "type": 1, "text": "Explain the search index\nwith details"}),
            ("bubbleId:comp-uuid-003:x2", {"bubbleId": "x2", "type": 2, "text": "The search index maps tokens to sessions."}),
        ],
    )

    # Workspace 3: no composers at all
    ws3 = ws_storage / "empty789"
    write_workspace_json(ws3, "file:///Users/testuser/dev/empty")
    create_store(ws3 / "state.vscdb", items={"composer.composerData": {"allComposers": []}})

    # Global store; bubbles for 001 are stored out of conversation order
    create_store(
        root / "globalStorage" / "state.vscdb",
        items={"releaseNotes/lastVersion": "0.43.2"},
        kv=[
            ("composerData:comp-uuid-001", {
                "composerId": "comp-uuid-001",
                "name": "Fix auth bug",
                "createdAt": ms(10),
                "lastUpdatedAt": ms(11),
                "fullConversationHeadersOnly": [
                    {"bubbleId": "b1", "type": 1},
                    {"bubbleId": "b2", "type": 2},
                    {"bubbleId": "b3", "type": 2},
                    {"bubbleId": "b4", "type": 1},
                ],
                "contextTokensUsed": 6200,
                "contextTokenLimit": 200000,
                "contextUsagePercent": 3.1,
            }),
            ("bubbleId:comp-uuid-001:b1", BUBBLES_001["b1"]),
            ("bubbleId:comp-uuid-001:b4", BUBBLES_001["b4"]),
            ("bubbleId:comp-uuid-001:b2", BUBBLES_001["b2"]),
            ("bubbleId:comp-uuid-001:b3", BUBBLES_001["b3"]),
            ("composerData:comp-uuid-002", {
                "composerId": "comp-uuid-002",
                "createdAt": ms(11, 0, 1),
                "lastUpdatedAt": ms(14),
            }),
            ("bubbleId:comp-uuid-002:d1", {"bubbleId": "d1", "type": 1, "text": "Add dark mode support to the app"}),
            ("bubbleId:comp-uuid-002:d2", "this is not json"),
            ("bubbleId:comp-uuid-002:d3", {"bubbleId": "d3", "type": 3, "text": "internal marker"}),
            ("bubbleId:comp-uuid-002:d4", {
                "bubbleId": "d4", "type": 2,
                "text": "Implemented dark mode toggle with CSS variables",
            }),
            ("composerData:comp-uuid-004", {
                "composerId": "comp-uuid-004",
                "name": "Python basics",
                "createdAt": ms(9),
                "lastUpdatedAt": ms(9, 5),
                "fullConversationHeadersOnly": [{"bubbleId": "g1"}, {"bubbleId": "g2"}],
            }),
            ("bubbleId:comp-uuid-004:g1", {"bubbleId": "g1", "type": 1, "text": "What is Python?"}),
            ("bubbleId:comp-uuid-004:g2", {"bubbleId": "g2", "type": 2, "text": "Python is a high-level programming language."}),
            ("composerData:comp-uuid-005", {"composerId": "comp-uuid-005", "name": "Empty", "createdAt": ms(8)}),
        ],
    )
    return root


@pytest.fixture
def storage(cursor_data):
    from cursor_history.storage import CursorStorage

    return CursorStorage(cursor_data)


class RecordingLog:
    """DebugLog that keeps messages for assertions."""

    def __init__(self):
        self.messages = []

    def log(self, message: str) -> None:
        self.messages.append(message)


@pytest.fixture
def recording_log():
    return RecordingLog()


@pytest.fixture
def make_store():
    """Factory for ad-hoc state.vscdb files."""
    return create_store
