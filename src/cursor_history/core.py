"""Core data models for cursor-history."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional


@dataclass
class Workspace:
    """A project folder that has been opened in Cursor."""

    id: str  # workspaceStorage directory name
    path: str  # decoded folder, e.g. "/Users/me/dev/app"
    session_count: int = 0


@dataclass
class TokenUsage:
    input_tokens: int = 0
    output_tokens: int = 0


@dataclass
class ContextWindowStatus:
    """Context window fill level recorded when a user message was sent."""

    tokens_used: int
    token_limit: int
    percentage_remaining: Optional[float] = None


@dataclass
class SessionUsage:
    """Session-level usage. Only fields backed by source data are set."""

    context_tokens_used: Optional[int] = None
    context_token_limit: Optional[int] = None
    context_usage_percent: Optional[float] = None
    total_input_tokens: Optional[int] = None
    total_output_tokens: Optional[int] = None


@dataclass
class CodeBlock:
    language: str
    content: str
    start_line: int  # 1-based line of the opening fence in Message.content


@dataclass
class Message:
    """A single rendered message within a chat session."""

    id: str
    role: str  # "user" | "assistant"
    content: str
    timestamp: Optional[datetime] = None
    code_blocks: list[CodeBlock] = field(default_factory=list)
    token_usage: Optional[TokenUsage] = None
    model: Optional[str] = None
    duration_ms: Optional[int] = None
    context_window_status: Optional[ContextWindowStatus] = None  # user messages only


@dataclass
class ChatSession:
    """A single Cursor composer conversation.

    ``index`` is a view-time position in the current listing; ``id`` is the
    identity. Summaries produced by listings carry no messages.
    """

    id: str  # composerId
    title: str
    workspace_id: str
    index: int = 0
    created_at: Optional[datetime] = None
    last_updated_at: Optional[datetime] = None
    workspace_path: Optional[str] = None
    message_count: int = 0
    usage: Optional[SessionUsage] = None
    messages: list[Message] = field(default_factory=list)


@dataclass
class SearchSnippet:
    role: str
    text: str
    match_positions: list[tuple[int, int]] = field(default_factory=list)  # offsets into text


@dataclass
class SearchResult:
    session_id: str
    index: int
    title: str
    match_count: int
    workspace_path: Optional[str] = None
    created_at: Optional[datetime] = None
    snippets: list[SearchSnippet] = field(default_factory=list)
