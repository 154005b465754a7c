"""Resolve user-facing session references to canonical session ids.

A reference is a 1-based index into the current listing, a composer id, an
inclusive ``a-b`` index range, or any comma-separated mixture of those (also
accepted as a list). Indexes are only meaningful against the listing they
were shown from, so callers resolve against a fresh listing every time.
"""

import re
from typing import Sequence, Union

from .core import ChatSession
from .errors import InvalidInputError, NotFoundError, SessionNotFoundError

SessionRef = Union[int, str, Sequence[Union[int, str]]]

_INDEX = re.compile(r"^\d+$")
_RANGE = re.compile(r"^(\d+)\s*-\s*(\d+)$")


def parse_identifiers(ref: SessionRef) -> list[Union[int, str]]:
    """Split a reference into index (int) and id (str) tokens, expanding ranges."""
    if isinstance(ref, bool):
        raise InvalidInputError(f"Invalid session identifier: {ref!r}", value=ref)
    if isinstance(ref, int):
        return [ref]
    if isinstance(ref, str):
        if not ref.strip():
            raise InvalidInputError("Session identifier must not be empty", value=ref)
        tokens = []
        for part in ref.split(","):
            tokens.extend(_parse_token(part))
        return tokens
    if isinstance(ref, (list, tuple)):
        if not ref:
            raise InvalidInputError("No session identifiers given", value=ref)
        tokens = []
        for item in ref:
            tokens.extend(parse_identifiers(item))
        return tokens
    raise InvalidInputError(f"Invalid session identifier: {ref!r}", value=ref)


def _parse_token(part: str) -> list[Union[int, str]]:
    token = part.strip()
    if not token:
        raise InvalidInputError("Empty entry in session identifier list", value=part)
    if _INDEX.match(token):
        return [int(token)]
    match = _RANGE.match(token)
    if match:
        start, end = int(match.group(1)), int(match.group(2))
        if start > end:
            raise InvalidInputError(f"Invalid range {token}: start is after end", value=token)
        return list(range(start, end + 1))
    return [token]


def resolve_identifiers(ref: SessionRef, sessions: list[ChatSession]) -> list[str]:
    """Map a reference onto ``sessions`` (an indexed listing), returning ordered unique ids.

    Raises:
        InvalidInputError: the reference is empty or malformed.
        NotFoundError: an index is out of range or an id matches no session.
    """
    by_index = {s.index: s.id for s in sessions}
    known_ids = {s.id for s in sessions}
    count = len(sessions)

    resolved = []
    for token in parse_identifiers(ref):
        if isinstance(token, int):
            if token not in by_index:
                raise SessionNotFoundError(f"#{token}", count)
            session_id = by_index[token]
        else:
            if token not in known_ids:
                hint = f"Valid range: 1-{count}" if count else "No sessions found"
                raise NotFoundError(f"Session '{token}' not found. {hint}", identifier=token)
            session_id = token
        if session_id not in resolved:
            resolved.append(session_id)
    return resolved
