"""Cursor chat history storage.

Reads chat data from Cursor's SQLite databases (state.vscdb) in both
workspace-level and global storage locations:

- ``workspaceStorage/<hash>/state.vscdb``: ``ItemTable['composer.composerData']``
  lists the composers (sessions) opened in that workspace.
- ``globalStorage/state.vscdb``: ``cursorDiskKV`` holds the full composer
  records (``composerData:<id>``) and one record per message
  (``bubbleId:<composerId>:<bubbleId>``).

Nothing is cached: Cursor mutates these files while it runs, so every call
re-reads the stores. All access is read-only except ``rename_session``.
"""

import json
import urllib.parse
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

from .config import (
    BUBBLE_PREFIX,
    COMPOSER_DATA_KEY,
    COMPOSER_PREFIX,
    ITEM_TABLE,
    KV_TABLE,
    STORE_FILENAME,
    WORKSPACE_JSON,
    get_cursor_data_path,
    get_global_db_path,
    get_workspace_storage_path,
)
from .core import ChatSession, SearchResult, Workspace
from .debug import NULL_LOG, DebugLog
from .errors import CorruptedError, InvalidInputError, NotFoundError
from .reconstruct import composer_id_of, parse_record, reconstruct, summarize_composer
from .resolve import SessionRef, resolve_identifiers
from .search import DEFAULT_CONTEXT_CHARS, search_session, validate_query
from .store import Store, open_store

GLOBAL_WORKSPACE_ID = "global"

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


@dataclass
class ComposerData:
    """The composer list of one workspace store, plus how it was wrapped."""

    composers: list[dict]
    is_new_format: bool  # {"allComposers": [...]} vs a bare list
    raw: object


def read_workspace_json(ws_dir: Path) -> str | None:
    """Extract the project path from a workspace's workspace.json."""
    ws_json = ws_dir / WORKSPACE_JSON
    if not ws_json.exists():
        return None
    try:
        data = json.loads(ws_json.read_text(encoding="utf-8"))
    except (json.JSONDecodeError, OSError, UnicodeDecodeError):
        return None
    if not isinstance(data, dict):
        return None
    # Multi-root workspaces point at a .code-workspace file instead of a folder
    uri = data.get("folder") or data.get("workspace") or ""
    if not isinstance(uri, str):
        return None
    if uri.startswith("file://"):
        return urllib.parse.unquote(uri[7:])
    return uri or None


async def get_composer_data(store: Store) -> ComposerData | None:
    """Read ``composer.composerData`` in either its current or legacy shape."""
    raw = await store.get(ITEM_TABLE, COMPOSER_DATA_KEY)
    if not raw:
        return None
    try:
        data = json.loads(raw)
    except json.JSONDecodeError:
        return None

    if isinstance(data, list):
        return ComposerData([c for c in data if isinstance(c, dict)], False, data)
    if isinstance(data, dict):
        composers = data.get("allComposers")
        if not isinstance(composers, list):
            composers = []
        return ComposerData([c for c in composers if isinstance(c, dict)], True, data)
    return None


async def update_composer_data(
    store: Store,
    composers: list[dict],
    is_new_format: bool,
    original_raw: object = None,
) -> None:
    """Write a workspace's composer list back in the shape it was read in.

    This is the only write path into Cursor's data. Other top-level keys of
    the current format (``selectedComposerIds`` etc.) are preserved.
    """
    if is_new_format:
        payload = dict(original_raw) if isinstance(original_raw, dict) else {}
        payload["allComposers"] = composers
    else:
        payload = composers
    await store.put(ITEM_TABLE, COMPOSER_DATA_KEY, json.dumps(payload))


def _merge_composer(header: dict, record: dict | None) -> dict:
    """Overlay the workspace header (authoritative for name/timestamps) on the global record."""
    merged = dict(record or {})
    merged.update({k: v for k, v in header.items() if v not in (None, "")})
    return merged


def _ts(value: datetime | None) -> float:
    return (value or _EPOCH).timestamp()


def _sort_key(session: ChatSession):
    return (-_ts(session.last_updated_at), -_ts(session.created_at), session.id)


def _matches_workspace(session: ChatSession, workspace: str) -> bool:
    wanted = workspace.rstrip("/") or workspace
    path = (session.workspace_path or "").rstrip("/")
    return session.workspace_id == workspace or (bool(path) and path == wanted)


class CursorStorage:
    """Entry point for reading (and renaming) Cursor chat sessions."""

    def __init__(self, data_path: Path | str | None = None, log: DebugLog | None = None):
        self.data_path = Path(data_path) if data_path else get_cursor_data_path()
        self.log = log or NULL_LOG

    def get_workspace_storage_path(self) -> Path:
        return get_workspace_storage_path(self.data_path)

    def get_global_db_path(self) -> Path:
        return get_global_db_path(self.data_path)

    def is_available(self) -> bool:
        return self.get_workspace_storage_path().is_dir() or self.get_global_db_path().is_file()

    def _require_data(self) -> None:
        if not self.is_available():
            raise NotFoundError(f"Cursor data not found at {self.data_path}", path=self.data_path)

    # ── Workspaces ───────────────────────────────────────────────

    async def _read_workspace_composers(self, db_path: Path) -> ComposerData | None:
        try:
            async with open_store(db_path) as store:
                return await get_composer_data(store)
        except CorruptedError as e:
            self.log.log(f"Cannot read composer data from {db_path}: {e}")
            return None

    async def _scan_workspaces(self) -> list[tuple[Workspace, list[dict]]]:
        self._require_data()
        base = self.get_workspace_storage_path()
        if not base.is_dir():
            return []

        found = []
        for ws_dir in sorted(base.iterdir()):
            if not ws_dir.is_dir():
                continue
            db_path = ws_dir / STORE_FILENAME
            if not db_path.exists():
                continue
            display_path = read_workspace_json(ws_dir)
            if not display_path:
                self.log.log(f"Skipping {ws_dir.name}: no workspace.json folder")
                continue
            data = await self._read_workspace_composers(db_path)
            if data is None or not data.composers:
                continue
            found.append((
                Workspace(id=ws_dir.name, path=display_path, session_count=len(data.composers)),
                data.composers,
            ))
        return found

    async def find_workspaces(self) -> list[Workspace]:
        """Workspaces that have at least one chat session, in directory order."""
        return [ws for ws, _ in await self._scan_workspaces()]

    async def list_workspaces(self) -> list[Workspace]:
        """Workspaces sorted by session count, busiest first."""
        workspaces = await self.find_workspaces()
        workspaces.sort(key=lambda w: (-w.session_count, w.path))
        return workspaces

    async def find_workspace_by_path(self, path: str) -> Workspace | None:
        wanted = path.rstrip("/") or path
        for ws in await self.find_workspaces():
            if ws.path.rstrip("/") == wanted:
                return ws
        return None

    async def find_workspace_for_session(self, session_id: str) -> Workspace | None:
        for ws, composers in await self._scan_workspaces():
            if any(composer_id_of(c) == session_id for c in composers):
                return ws
        return None

    # ── Sessions ─────────────────────────────────────────────────

    async def _read_global_composers(self) -> dict[str, dict]:
        path = self.get_global_db_path()
        if not path.is_file():
            return {}
        async with open_store(path) as store:
            if not await store.has_table(KV_TABLE):
                self.log.log(f"No {KV_TABLE} table in {path}")
                return {}
            rows = await store.query_prefix(KV_TABLE, COMPOSER_PREFIX)

        records = {}
        for key, value in rows:
            record = parse_record(value)
            if record is None:
                self.log.log(f"Skipping malformed composer record {key}")
                continue
            composer_id = key[len(COMPOSER_PREFIX):]
            record.setdefault("composerId", composer_id)
            records[composer_id] = record
        return records

    async def _collect(self) -> list[tuple[ChatSession, dict]]:
        """Indexed session summaries paired with their merged composer records."""
        scanned = await self._scan_workspaces()
        global_composers = await self._read_global_composers()

        collected = []
        seen = set()
        for ws, headers in scanned:
            for header in headers:
                composer_id = composer_id_of(header)
                if not composer_id or composer_id in seen:
                    continue
                seen.add(composer_id)
                record = _merge_composer(header, global_composers.get(composer_id))
                summary = summarize_composer(record, workspace_id=ws.id, workspace_path=ws.path)
                collected.append((summary, record))

        # Sessions that only exist in global storage (no workspace folder)
        for composer_id, record in global_composers.items():
            if composer_id in seen:
                continue
            summary = summarize_composer(record, workspace_id=GLOBAL_WORKSPACE_ID)
            if summary.message_count > 0:
                collected.append((summary, record))

        collected.sort(key=lambda pair: _sort_key(pair[0]))
        for index, (summary, _) in enumerate(collected, start=1):
            summary.index = index
        return collected

    async def list_sessions(self, workspace: str | None = None, limit: int | None = None) -> list[ChatSession]:
        """Return session summaries, most recently updated first.

        Indexes are assigned over the full listing before the workspace
        filter, so an index means the same session with or without it.
        """
        sessions = [summary for summary, _ in await self._collect()]
        if workspace:
            sessions = [s for s in sessions if _matches_workspace(s, workspace)]
        if limit is not None and limit > 0:
            sessions = sessions[:limit]
        return sessions

    async def _read_bubbles(self, store: Store, composer_id: str) -> tuple[dict | None, list[str]]:
        if not await store.has_table(KV_TABLE):
            return None, []
        record = parse_record(await store.get(KV_TABLE, COMPOSER_PREFIX + composer_id))
        rows = await store.query_prefix(KV_TABLE, f"{BUBBLE_PREFIX}{composer_id}:")
        return record, [value for _, value in rows]

    async def _load(self, global_store: Store | None, summary: ChatSession, header: dict) -> ChatSession:
        record, bubbles = None, []
        if global_store is not None:
            record, bubbles = await self._read_bubbles(global_store, summary.id)

        # Older Cursor versions kept bubbles in the workspace store
        if not bubbles and summary.workspace_id != GLOBAL_WORKSPACE_ID:
            ws_db = self.get_workspace_storage_path() / summary.workspace_id / STORE_FILENAME
            if ws_db.is_file():
                async with open_store(ws_db) as ws_store:
                    ws_record, bubbles = await self._read_bubbles(ws_store, summary.id)
                record = record or ws_record

        session = reconstruct(
            _merge_composer(header, record),
            bubbles,
            workspace_id=summary.workspace_id,
            workspace_path=summary.workspace_path,
            log=self.log,
        )
        session.index = summary.index
        self.log.log(f"Reconstructed session {session.id}: {session.message_count} messages")
        return session

    async def _iter_loaded(self, pairs: list[tuple[ChatSession, dict]]):
        """Yield fully reconstructed sessions one at a time, sharing one global store handle."""
        global_db = self.get_global_db_path()
        if not global_db.is_file():
            for summary, header in pairs:
                yield await self._load(None, summary, header)
            return
        async with open_store(global_db) as global_store:
            for summary, header in pairs:
                yield await self._load(global_store, summary, header)

    async def get_session(self, ref: int | str) -> ChatSession:
        """Return one fully reconstructed session by 1-based index or id."""
        sessions = await self.get_sessions(ref)
        if len(sessions) != 1:
            raise InvalidInputError(f"Expected a single session, got {len(sessions)}", value=ref)
        return sessions[0]

    async def get_sessions(self, ref: SessionRef) -> list[ChatSession]:
        collected = await self._collect()
        ids = resolve_identifiers(ref, [summary for summary, _ in collected])
        by_id = {summary.id: (summary, header) for summary, header in collected}
        return [session async for session in self._iter_loaded([by_id[i] for i in ids])]

    async def resolve_session_identifiers(self, ref: SessionRef) -> list[str]:
        return resolve_identifiers(ref, await self.list_sessions())

    async def search_sessions(
        self,
        query: str,
        workspace: str | None = None,
        context_chars: int = DEFAULT_CONTEXT_CHARS,
        limit: int = 0,
    ) -> list[SearchResult]:
        """Search message content; results follow listing order. ``limit=0`` is unlimited."""
        validate_query(query, context_chars, limit)
        pairs = await self._collect()
        if workspace:
            pairs = [p for p in pairs if _matches_workspace(p[0], workspace)]

        results = []
        async for session in self._iter_loaded(pairs):
            result = search_session(session, query, context_chars)
            if result is None:
                continue
            results.append(result)
            if limit and len(results) >= limit:
                break
        return results

    # ── Mutation ─────────────────────────────────────────────────

    async def rename_session(self, ref: int | str, title: str) -> str:
        """Rename a session in its workspace store. Returns the session id.

        This opens the workspace store read-write; a running Cursor holding
        the lock makes it fail with LockedError.
        """
        title = title.strip()
        if not title:
            raise InvalidInputError("Title must not be empty", value=title)
        ids = await self.resolve_session_identifiers(ref)
        if len(ids) != 1:
            raise InvalidInputError("Rename takes exactly one session", value=ref)
        session_id = ids[0]

        ws = await self.find_workspace_for_session(session_id)
        if ws is None:
            raise InvalidInputError(
                f"Session {session_id} is not attached to a workspace and cannot be renamed",
                value=session_id,
            )

        db_path = self.get_workspace_storage_path() / ws.id / STORE_FILENAME
        async with open_store(db_path, readonly=False) as store:
            data = await get_composer_data(store)
            if data is None:
                raise NotFoundError(f"No composer data in {db_path}", path=db_path)
            for composer in data.composers:
                if composer_id_of(composer) == session_id:
                    composer["name"] = title
                    break
            else:
                raise NotFoundError(f"Session {session_id} not found in {db_path}", identifier=session_id)
            await update_composer_data(store, data.composers, data.is_new_format, data.raw)
        self.log.log(f"Renamed session {session_id} to {title!r}")
        return session_id
