"""Backup and restore of Cursor's chat databases.

A backup is a zip archive holding every store file under the data root at
its original relative path, plus ``manifest.json`` listing each file's size
and ``sha256:<hex>`` checksum. Creation is all-or-nothing: the archive is
staged next to the destination and moved into place only once complete.
Restore is best-effort and reports every skipped file as a warning.
"""

import asyncio
import hashlib
import json
import os
import shutil
import tempfile
import time
import zipfile
import zlib
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path, PurePosixPath
from typing import Callable, Optional

from .config import (
    APP_VERSION_KEY,
    BUBBLE_PREFIX,
    COMPOSER_PREFIX,
    GLOBAL_STORAGE_DIR,
    ITEM_TABLE,
    KV_TABLE,
    STORE_FILENAME,
    WORKSPACE_JSON,
    WORKSPACE_STORAGE_DIR,
    get_cursor_data_path,
    get_default_backup_dir,
)
from .debug import NULL_LOG, DebugLog
from .errors import (
    AlreadyExistsError,
    CursorHistoryError,
    ErrorKind,
    InsufficientResourcesError,
    NotFoundError,
)
from .store import open_store

MANIFEST_NAME = "manifest.json"
MANIFEST_VERSION = "1.0"
DISK_SPACE_MARGIN = 0.10
CHUNK_SIZE = 1024 * 1024


# ── Records ──────────────────────────────────────────────────────


def _iso(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def _parse_iso(value: str) -> datetime:
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass
class BackupFileEntry:
    relative_path: str  # posix separators, relative to the data root
    size_bytes: int
    checksum: str  # "sha256:<hex>"

    def to_dict(self) -> dict:
        return {"relativePath": self.relative_path, "sizeBytes": self.size_bytes, "checksum": self.checksum}

    @classmethod
    def from_dict(cls, data: dict) -> "BackupFileEntry":
        return cls(
            relative_path=str(data["relativePath"]),
            size_bytes=int(data["sizeBytes"]),
            checksum=str(data["checksum"]),
        )


@dataclass
class BackupStats:
    session_count: int = 0
    message_count: int = 0
    total_size_bytes: int = 0


@dataclass
class BackupManifest:
    """Describes an archive's contents. Immutable once written."""

    version: str
    created_at: datetime
    stats: BackupStats
    files: list[BackupFileEntry] = field(default_factory=list)
    source_app_version: Optional[str] = None

    def to_dict(self) -> dict:
        data = {"version": self.version, "createdAt": _iso(self.created_at)}
        if self.source_app_version:
            data["sourceAppVersion"] = self.source_app_version
        data["stats"] = {
            "sessionCount": self.stats.session_count,
            "messageCount": self.stats.message_count,
            "totalSizeBytes": self.stats.total_size_bytes,
        }
        data["files"] = [entry.to_dict() for entry in self.files]
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "BackupManifest":
        """Build a manifest from its JSON form. Raises KeyError/TypeError/ValueError when malformed."""
        if not isinstance(data, dict):
            raise ValueError(f"manifest must be an object, got {type(data).__name__}")
        created_at = data["createdAt"]
        if not isinstance(created_at, str):
            raise ValueError(f"createdAt must be a string, got {type(created_at).__name__}")
        stats = data.get("stats") or {}
        if not isinstance(stats, dict):
            raise ValueError("stats must be an object")
        files = data["files"]
        if not isinstance(files, list) or not all(isinstance(f, dict) for f in files):
            raise ValueError("files must be a list of objects")
        return cls(
            version=str(data["version"]),
            created_at=_parse_iso(created_at),
            stats=BackupStats(
                session_count=int(stats.get("sessionCount", 0)),
                message_count=int(stats.get("messageCount", 0)),
                total_size_bytes=int(stats.get("totalSizeBytes", 0)),
            ),
            files=[BackupFileEntry.from_dict(f) for f in files],
            source_app_version=data.get("sourceAppVersion"),
        )


@dataclass
class BackupProgress:
    phase: str  # scanning | backing-up | compressing | finalizing
    files_completed: int = 0
    total_files: int = 0
    current_file: Optional[str] = None


@dataclass
class RestoreProgress:
    phase: str  # validating | restoring | finalizing
    files_completed: int = 0
    total_files: int = 0
    current_file: Optional[str] = None


@dataclass
class BackupResult:
    success: bool
    backup_path: str
    manifest: Optional[BackupManifest] = None
    duration_ms: int = 0
    error: Optional[str] = None
    error_kind: Optional[ErrorKind] = None


@dataclass
class ValidationResult:
    status: str  # valid | warnings | invalid
    manifest: Optional[BackupManifest] = None
    valid_files: list[str] = field(default_factory=list)
    corrupted_files: list[str] = field(default_factory=list)
    missing_files: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)


@dataclass
class RestoreResult:
    success: bool
    target_path: str
    files_restored: int = 0
    warnings: list[str] = field(default_factory=list)
    duration_ms: int = 0
    error: Optional[str] = None
    error_kind: Optional[ErrorKind] = None


@dataclass
class BackupInfo:
    path: str
    filename: str
    size: int
    modified_at: datetime
    manifest: Optional[BackupManifest] = None


ProgressCallback = Callable[[BackupProgress], None]
RestoreProgressCallback = Callable[[RestoreProgress], None]


# ── Helpers ──────────────────────────────────────────────────────


def default_backup_filename(now: datetime | None = None) -> str:
    now = now or datetime.now()
    return f"cursor-history-{now:%Y-%m-%d-%H%M%S}.zip"


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


def _report(callback, progress) -> None:
    if callback is not None:
        callback(progress)


def scan_source_files(source: Path) -> list[str]:
    """Relative posix paths of the store files (and workspace.json side-cars) to back up."""
    found = []
    global_db = source / GLOBAL_STORAGE_DIR / STORE_FILENAME
    if global_db.is_file():
        found.append(f"{GLOBAL_STORAGE_DIR}/{STORE_FILENAME}")

    ws_root = source / WORKSPACE_STORAGE_DIR
    if ws_root.is_dir():
        for ws_dir in sorted(ws_root.iterdir()):
            if not ws_dir.is_dir() or not (ws_dir / STORE_FILENAME).is_file():
                continue
            found.append(f"{WORKSPACE_STORAGE_DIR}/{ws_dir.name}/{STORE_FILENAME}")
            if (ws_dir / WORKSPACE_JSON).is_file():
                found.append(f"{WORKSPACE_STORAGE_DIR}/{ws_dir.name}/{WORKSPACE_JSON}")
    return found


def _check_disk_space(directory: Path, required_bytes: int) -> None:
    needed = int(required_bytes * (1 + DISK_SPACE_MARGIN))
    free = shutil.disk_usage(directory).free
    if free < needed:
        raise InsufficientResourcesError(directory, needed, free)


def _copy_into_zip(zf: zipfile.ZipFile, src: Path, arcname: str) -> tuple[int, str]:
    """Stream one file into the archive, hashing it in the same pass."""
    digest = hashlib.sha256()
    size = 0
    with open(src, "rb") as fin, zf.open(arcname, "w", force_zip64=True) as fout:
        while True:
            chunk = fin.read(CHUNK_SIZE)
            if not chunk:
                break
            digest.update(chunk)
            size += len(chunk)
            fout.write(chunk)
    return size, f"sha256:{digest.hexdigest()}"


def _hash_member(zf: zipfile.ZipFile, name: str) -> str:
    digest = hashlib.sha256()
    with zf.open(name) as fin:
        for chunk in iter(lambda: fin.read(CHUNK_SIZE), b""):
            digest.update(chunk)
    return f"sha256:{digest.hexdigest()}"


def _read_manifest(zf: zipfile.ZipFile) -> BackupManifest | None:
    try:
        data = json.loads(zf.read(MANIFEST_NAME))
        return BackupManifest.from_dict(data)
    except (KeyError, TypeError, ValueError, zipfile.BadZipFile, zlib.error):
        return None


def _read_manifest_file(path: Path) -> BackupManifest | None:
    try:
        with zipfile.ZipFile(path) as zf:
            return _read_manifest(zf)
    except (OSError, zipfile.BadZipFile):
        return None


def _safe_target(root: Path, relative_path: str) -> Path | None:
    """Resolve an archive entry under ``root``; None if it would escape it."""
    if not relative_path or "\\" in relative_path:
        return None
    rel = PurePosixPath(relative_path)
    if not rel.parts or rel.is_absolute() or ".." in rel.parts or ":" in rel.parts[0]:
        return None
    target = root.joinpath(*rel.parts)
    try:
        target.resolve().relative_to(root.resolve())
    except ValueError:
        return None
    return target


def _extract_member(zf: zipfile.ZipFile, name: str, dest: Path) -> None:
    dest.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(prefix=f".{dest.name}.", suffix=".tmp", dir=dest.parent)
    try:
        with zf.open(name) as src, os.fdopen(fd, "wb") as out:
            shutil.copyfileobj(src, out, CHUNK_SIZE)
        os.replace(tmp, dest)
    finally:
        if os.path.exists(tmp):
            os.unlink(tmp)


async def _read_source_stats(source: Path, log: DebugLog) -> tuple[int, int, str | None]:
    """Count composers and bubbles in the global store without reconstructing anything."""
    global_db = source / GLOBAL_STORAGE_DIR / STORE_FILENAME
    if not global_db.is_file():
        return 0, 0, None
    try:
        async with open_store(global_db) as store:
            version = None
            if await store.has_table(ITEM_TABLE):
                version = await store.get(ITEM_TABLE, APP_VERSION_KEY)
            if not await store.has_table(KV_TABLE):
                return 0, 0, version
            sessions = await store.count_prefix(KV_TABLE, COMPOSER_PREFIX)
            messages = await store.count_prefix(KV_TABLE, BUBBLE_PREFIX)
            return sessions, messages, version
    except CursorHistoryError as e:
        log.log(f"Could not read backup stats from {global_db}: {e}")
        return 0, 0, None


# ── Create ───────────────────────────────────────────────────────


async def _create(source: Path, dest: Path, force: bool, on_progress, log: DebugLog) -> BackupManifest:
    _report(on_progress, BackupProgress("scanning"))
    files = scan_source_files(source)
    if not any(f.endswith(STORE_FILENAME) for f in files):
        raise NotFoundError(f"No Cursor data found at {source}", path=source)
    log.log(f"Found {len(files)} files to back up under {source}")

    if dest.exists() and not force:
        raise AlreadyExistsError(dest)
    dest.parent.mkdir(parents=True, exist_ok=True)
    _check_disk_space(dest.parent, sum((source / f).stat().st_size for f in files))

    fd, tmp = tempfile.mkstemp(prefix=".cursor-history-", suffix=".zip.tmp", dir=dest.parent)
    os.close(fd)
    try:
        entries = []
        with zipfile.ZipFile(tmp, "w", compression=zipfile.ZIP_DEFLATED) as zf:
            for i, rel in enumerate(files):
                _report(on_progress, BackupProgress("backing-up", i, len(files), rel))
                size, checksum = await asyncio.to_thread(_copy_into_zip, zf, source / rel, rel)
                entries.append(BackupFileEntry(rel, size, checksum))
                log.log(f"Archived {rel} ({size} bytes, {checksum})")

            _report(on_progress, BackupProgress("compressing", len(files), len(files)))
            sessions, messages, version = await _read_source_stats(source, log)
            manifest = BackupManifest(
                version=MANIFEST_VERSION,
                created_at=datetime.now(timezone.utc),
                stats=BackupStats(sessions, messages, sum(e.size_bytes for e in entries)),
                files=entries,
                source_app_version=version,
            )
            zf.writestr(MANIFEST_NAME, json.dumps(manifest.to_dict(), indent=2))

        _report(on_progress, BackupProgress("finalizing", len(files), len(files)))
        os.replace(tmp, dest)
    finally:
        if os.path.exists(tmp):
            os.unlink(tmp)
    return manifest


async def create_backup(
    source_path: Path | str | None = None,
    output_path: Path | str | None = None,
    force: bool = False,
    on_progress: ProgressCallback | None = None,
    log: DebugLog | None = None,
) -> BackupResult:
    """Snapshot every store under ``source_path`` into a zip archive.

    Failures are reported on the result (``success=False`` with ``error`` and
    ``error_kind``) rather than raised; no partial file is left behind.
    """
    log = log or NULL_LOG
    started = time.monotonic()
    source = Path(source_path) if source_path else get_cursor_data_path()
    if output_path:
        dest = Path(output_path).expanduser()
    else:
        dest = get_default_backup_dir() / default_backup_filename()

    try:
        manifest = await _create(source, dest, force, on_progress, log)
    except CursorHistoryError as e:
        log.log(f"Backup failed: {e}")
        return BackupResult(False, str(dest), duration_ms=_elapsed_ms(started), error=str(e), error_kind=e.kind)
    except OSError as e:
        log.log(f"Backup failed: {e}")
        return BackupResult(
            False, str(dest), duration_ms=_elapsed_ms(started), error=str(e), error_kind=ErrorKind.GENERAL
        )
    return BackupResult(True, str(dest), manifest=manifest, duration_ms=_elapsed_ms(started))


# ── Validate ─────────────────────────────────────────────────────


def _validate(path: Path) -> ValidationResult:
    result = ValidationResult(status="invalid")
    try:
        zf = zipfile.ZipFile(path)
    except (OSError, zipfile.BadZipFile) as e:
        result.errors.append(f"Cannot open backup {path}: {e}")
        return result

    with zf:
        manifest = _read_manifest(zf)
        if manifest is None:
            result.errors.append("manifest not found")
            return result
        result.manifest = manifest

        names = set(zf.namelist())
        for entry in manifest.files:
            rel = entry.relative_path
            if rel not in names:
                result.missing_files.append(rel)
                result.errors.append(f"{rel}: missing from archive")
                continue
            try:
                actual = _hash_member(zf, rel)
            except (zipfile.BadZipFile, zlib.error, OSError) as e:
                result.corrupted_files.append(rel)
                result.errors.append(f"{rel}: unreadable ({e})")
                continue
            if actual != entry.checksum:
                result.corrupted_files.append(rel)
                result.errors.append(f"{rel}: checksum mismatch (expected {entry.checksum}, got {actual})")
            else:
                result.valid_files.append(rel)

    if not result.corrupted_files and not result.missing_files:
        result.status = "valid"
    elif result.valid_files:
        result.status = "warnings"
    return result


async def validate_backup(path: Path | str) -> ValidationResult:
    """Recompute every manifested checksum and bucket files into valid/corrupted/missing."""
    return await asyncio.to_thread(_validate, Path(path))


# ── Restore ──────────────────────────────────────────────────────


async def restore_backup(
    backup_path: Path | str,
    target_path: Path | str | None = None,
    force: bool = False,
    on_progress: RestoreProgressCallback | None = None,
    log: DebugLog | None = None,
) -> RestoreResult:
    """Restore every valid file of a backup under ``target_path`` (default: Cursor's data root).

    Existing files are kept unless ``force``; they, corrupted entries, missing
    entries and unsafe paths end up in ``warnings``. The result only fails when
    the archive itself cannot be used.
    """
    log = log or NULL_LOG
    started = time.monotonic()
    backup = Path(backup_path).expanduser()
    target = Path(target_path).expanduser() if target_path else get_cursor_data_path()

    def fail(error: str, kind: ErrorKind) -> RestoreResult:
        log.log(f"Restore failed: {error}")
        return RestoreResult(False, str(target), duration_ms=_elapsed_ms(started), error=error, error_kind=kind)

    if not backup.is_file():
        return fail(f"Backup not found: {backup}", ErrorKind.NOT_FOUND)

    _report(on_progress, RestoreProgress("validating"))
    validation = await validate_backup(backup)
    if validation.manifest is None:
        return fail("; ".join(validation.errors) or "manifest not found", ErrorKind.CORRUPTED)

    warnings = [f"{rel}: missing from archive, skipped" for rel in validation.missing_files]
    warnings.extend(f"{rel}: checksum mismatch, skipped" for rel in validation.corrupted_files)

    sizes = {e.relative_path: e.size_bytes for e in validation.manifest.files}
    pending = validation.valid_files
    try:
        target.mkdir(parents=True, exist_ok=True)
        _check_disk_space(target, sum(sizes.get(rel, 0) for rel in pending))
    except InsufficientResourcesError as e:
        return fail(str(e), e.kind)
    except OSError as e:
        return fail(str(e), ErrorKind.GENERAL)

    restored = 0
    with zipfile.ZipFile(backup) as zf:
        for i, rel in enumerate(pending):
            _report(on_progress, RestoreProgress("restoring", i, len(pending), rel))
            dest = _safe_target(target, rel)
            if dest is None:
                warnings.append(f"{rel}: unsafe path, skipped")
                continue
            if dest.exists() and not force:
                warnings.append(f"{rel}: already exists, skipped (use --force to overwrite)")
                continue
            try:
                await asyncio.to_thread(_extract_member, zf, rel, dest)
            except (zipfile.BadZipFile, zlib.error) as e:
                warnings.append(f"{rel}: could not be extracted ({e})")
                continue
            except OSError as e:
                warnings.append(f"{rel}: could not be written ({e})")
                continue
            restored += 1
            log.log(f"Restored {rel}")

    _report(on_progress, RestoreProgress("finalizing", len(pending), len(pending)))
    return RestoreResult(
        True, str(target), files_restored=restored, warnings=warnings, duration_ms=_elapsed_ms(started)
    )


# ── Listing ──────────────────────────────────────────────────────


async def read_backup_manifest(path: Path | str) -> BackupManifest | None:
    """Return an archive's manifest, or None if it cannot be read."""
    return await asyncio.to_thread(_read_manifest_file, Path(path))


def _list(directory: Path) -> list[BackupInfo]:
    infos = []
    for path in directory.glob("*.zip"):
        if not path.is_file():
            continue
        st = path.stat()
        infos.append(BackupInfo(
            path=str(path),
            filename=path.name,
            size=st.st_size,
            modified_at=datetime.fromtimestamp(st.st_mtime, tz=timezone.utc),
            manifest=_read_manifest_file(path),
        ))
    infos.sort(key=lambda info: (info.modified_at, info.filename), reverse=True)
    return infos


async def list_backups(directory: Path | str | None = None) -> list[BackupInfo]:
    """Backups in ``directory`` (default: the standard backup dir), newest first."""
    directory = Path(directory).expanduser() if directory else get_default_backup_dir()
    if not directory.is_dir():
        return []
    return await asyncio.to_thread(_list, directory)
