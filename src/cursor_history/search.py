"""Case-insensitive substring search over reconstructed sessions."""

import re

from .core import ChatSession, SearchResult, SearchSnippet
from .errors import InvalidInputError

DEFAULT_CONTEXT_CHARS = 50


def find_snippets(content: str, query: str, role: str, context_chars: int = DEFAULT_CONTEXT_CHARS) -> list[SearchSnippet]:
    """One snippet per match, ``context_chars`` either side, clamped to the content.

    Match positions are ``(start, end)`` offsets into the snippet text and
    include every occurrence visible in that snippet. Matching runs on the
    original text, so offsets hold even where lowercasing changes length.
    """
    pattern = re.compile(re.escape(query), re.IGNORECASE)
    snippets = []
    for match in pattern.finditer(content):
        start = max(0, match.start() - context_chars)
        end = min(len(content), match.end() + context_chars)
        text = content[start:end]
        snippets.append(SearchSnippet(
            role=role,
            text=text,
            match_positions=[m.span() for m in pattern.finditer(text)],
        ))
    return snippets


def search_session(session: ChatSession, query: str, context_chars: int = DEFAULT_CONTEXT_CHARS) -> SearchResult | None:
    """Search one fully reconstructed session; None when nothing matches."""
    snippets = []
    for message in session.messages:
        snippets.extend(find_snippets(message.content, query, message.role, context_chars))
    if not snippets:
        return None
    return SearchResult(
        session_id=session.id,
        index=session.index,
        title=session.title,
        match_count=len(snippets),
        workspace_path=session.workspace_path,
        created_at=session.created_at,
        snippets=snippets,
    )


def validate_query(query: str, context_chars: int, limit: int) -> None:
    if not isinstance(query, str) or not query.strip():
        raise InvalidInputError("Search query must not be empty", value=query)
    if context_chars < 0:
        raise InvalidInputError("context_chars must be >= 0", value=context_chars)
    if limit < 0:
        raise InvalidInputError("limit must be >= 0", value=limit)
