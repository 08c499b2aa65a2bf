"""
Crash-safe JSON persistence helpers.

Documents are serialized to a uniquely named temp file next to the target,
size-checked, then renamed over the destination with ``os.replace``. Disk work
runs in a worker thread so the event loop never blocks on it.
"""

import asyncio
import json
import logging
import os
from datetime import datetime
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional, Union
from uuid import uuid4

from errors import CorruptedFileError, PersistenceError

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]

# "{}" is the smallest valid document we ever write
MIN_DOCUMENT_SIZE = 2
TEMP_SUFFIX = ".tmp"


def _temp_path(path: Path) -> Path:
    return path.with_name(f"{path.name}.{os.getpid()}.{uuid4().hex[:8]}{TEMP_SUFFIX}")


def _write_json_sync(path: Path, data: Any, min_size: int) -> int:
    path.parent.mkdir(parents=True, exist_ok=True)
    payload = json.dumps(data, indent=2, ensure_ascii=False, default=str)
    tmp = _temp_path(path)
    try:
        with open(tmp, 'w', encoding='utf-8') as f:
            f.write(payload)
            f.flush()
            os.fsync(f.fileno())

        size = tmp.stat().st_size
        if size < min_size:
            raise PersistenceError(f"Refusing to write {size} bytes to {path}")

        os.replace(tmp, path)
        return size
    except BaseException:
        try:
            tmp.unlink()
        except FileNotFoundError:
            pass
        raise


async def write_json_atomic(path: PathLike, data: Any, min_size: int = MIN_DOCUMENT_SIZE) -> int:
    """
    Atomically replace ``path`` with ``data`` serialized as JSON.

    Returns:
        Number of bytes written

    Raises:
        PersistenceError: if the document is too small or the write fails
    """
    try:
        return await asyncio.to_thread(_write_json_sync, Path(path), data, min_size)
    except PersistenceError:
        raise
    except (OSError, TypeError, ValueError) as e:
        raise PersistenceError(f"Failed to write {path}: {e}") from e


def _read_json_sync(path: Path) -> Optional[Any]:
    if not path.exists():
        return None
    with open(path, 'r', encoding='utf-8') as f:
        raw = f.read()
    if not raw.strip():
        return None
    try:
        return json.loads(raw)
    except json.JSONDecodeError as e:
        raise CorruptedFileError(f"{path} is not valid JSON: {e}") from e


async def read_json(path: PathLike) -> Optional[Any]:
    """
    Read a JSON document; ``None`` when the file is absent or empty.

    Raises:
        CorruptedFileError: when the file exists but does not parse
    """
    return await asyncio.to_thread(_read_json_sync, Path(path))


async def read_json_safe(path: PathLike) -> Optional[Any]:
    """Like ``read_json`` but any failure is logged and reported as ``None``."""
    try:
        return await read_json(path)
    except (OSError, CorruptedFileError) as e:
        logger.error("Failed to read %s: %s", path, e)
        return None


def backup_corrupted_file(path: PathLike) -> Path:
    """Rename ``path`` aside as ``<name>.corrupted.<timestamp>``."""
    path = Path(path)
    stamp = datetime.now().strftime("%Y%m%d%H%M%S%f")
    backup = path.with_name(f"{path.name}.corrupted.{stamp}")
    os.replace(path, backup)
    logger.warning("Backed up corrupted file %s to %s", path, backup)
    return backup


def _check_shape(path: Path, data: Any, section: Optional[str]):
    if not isinstance(data, dict):
        raise CorruptedFileError(f"{path}: expected an object, got {type(data).__name__}")
    if section is not None and not isinstance(data.get(section, {}), (dict, type(None))):
        raise CorruptedFileError(f"{path}: \"{section}\" is not an object")


async def load_json_or_backup(path: PathLike, empty: Any, section: Optional[str] = None) -> Any:
    """
    Load ``path``; a corrupted file is backed up and replaced by ``empty``.

    When ``empty`` is a dict the document must be a JSON object too, and
    ``section``, if given, must hold an object. Anything else counts as
    corrupted. A missing file is created with ``empty``. Never raises for bad
    content.
    """
    path = Path(path)
    try:
        data = await read_json(path)
        if data is not None and isinstance(empty, dict):
            _check_shape(path, data, section)
    except CorruptedFileError as e:
        logger.error("Corrupted document detected: %s", e)
        await asyncio.to_thread(backup_corrupted_file, path)
        data = None
    except OSError as e:
        logger.error("Failed to read %s: %s", path, e)
        data = None

    if data is None:
        await write_json_atomic(path, empty)
        return empty
    return data


def cleanup_temp_files(path: PathLike) -> int:
    """Remove leftover temp files of ``path``. Returns how many were removed."""
    path = Path(path)
    if not path.parent.exists():
        return 0

    removed = 0
    for leftover in path.parent.glob(f"{path.name}.*{TEMP_SUFFIX}"):
        try:
            leftover.unlink()
            removed += 1
        except OSError as e:
            logger.warning("Could not remove temp file %s: %s", leftover, e)
    if removed:
        logger.info("Removed %d stale temp files for %s", removed, path.name)
    return removed


Writer = Callable[[PathLike, Any], Awaitable[Any]]


class CoalescingJsonWriter:
    """
    Keeps at most one write of a document in flight.

    A ``save()`` that arrives while a write is running only raises the pending
    flag and waits; when the running write finishes, exactly one follow-up
    write is issued with the latest snapshot, however many saves piled up.
    """

    def __init__(
        self,
        path: PathLike,
        snapshot: Callable[[], Any],
        writer: Optional[Writer] = None,
    ):
        self.path = Path(path)
        self._snapshot = snapshot
        self._writer = writer or write_json_atomic
        self._in_flight = False
        self._pending = False
        self._last_ok = True
        self._idle = asyncio.Event()
        self._idle.set()
        self.write_count = 0
        self.logger = logging.getLogger(self.__class__.__name__)

    @property
    def in_flight(self) -> bool:
        return self._in_flight

    async def save(self) -> bool:
        """Persist the current snapshot. Returns False if the last write failed."""
        if self._in_flight:
            self._pending = True
            await self._idle.wait()
            return self._last_ok

        self._in_flight = True
        self._idle.clear()
        ok = True
        try:
            while True:
                self._pending = False
                try:
                    await self._writer(self.path, self._snapshot())
                    self.write_count += 1
                    ok = True
                except Exception as e:
                    # retried on the next scheduled save
                    self.logger.error("Failed to save %s: %s", self.path.name, e)
                    ok = False
                if not self._pending:
                    break
        finally:
            self._in_flight = False
            self._last_ok = ok
            self._idle.set()
        return ok
