"""On-disk JSON document helpers shared by the registry and checkpoint log.

Documents are rewritten whole: serialized to a sibling temp file, fsynced,
then moved over the target with ``os.replace``. A reader therefore sees
either the previous document or the new one, never a torn write.

Concurrent writers are serialized with ``filelock`` locks that live next
to the document (``<name>.lock``). The lock is inter-process; nothing in
this package relies on process-local locks for shared files.
"""

import json
import logging
import os
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, Optional

from filelock import FileLock, Timeout

from src.workflow.errors import CorruptState, LockTimeout


logger = logging.getLogger(__name__)


def write_json_atomic(path: Path, payload: Dict[str, Any]) -> None:
    """Atomically replace ``path`` with the JSON encoding of ``payload``."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(
        prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent)
    )
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            json.dump(payload, handle, ensure_ascii=False, indent=2)
            handle.write("\n")
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        # Leave the previous document untouched on any failure.
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise


def read_json_document(path: Path) -> Optional[Dict[str, Any]]:
    """Read a JSON object document.

    Returns:
        The parsed object, or None if the file does not exist.

    Raises:
        CorruptState: If the file is not valid JSON or not an object.
    """
    try:
        raw = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return None
    except OSError as e:
        raise CorruptState(f"Unreadable state file: {e}", path=str(path)) from e

    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise CorruptState(f"Invalid JSON: {e}", path=str(path)) from e

    if not isinstance(data, dict):
        raise CorruptState(
            f"Expected a JSON object, got {type(data).__name__}", path=str(path)
        )
    return data


def lock_path_for(path: Path) -> Path:
    return path.with_name(path.name + ".lock")


@contextmanager
def locked(path: Path, timeout: float) -> Iterator[None]:
    """Hold the inter-process lock guarding ``path``.

    A fresh FileLock is created per call so that threads within one
    process contend on the OS lock exactly like separate processes do.

    Raises:
        LockTimeout: If the lock is not acquired within ``timeout`` seconds.
    """
    lock_file = lock_path_for(path)
    lock_file.parent.mkdir(parents=True, exist_ok=True)
    lock = FileLock(str(lock_file), timeout=timeout)
    try:
        lock.acquire()
    except Timeout as e:
        logger.warning(
            "Timed out waiting for state lock",
            extra={"lock_path": str(lock_file), "timeout": timeout},
        )
        raise LockTimeout(
            f"Could not acquire lock {lock_file} within {timeout}s"
        ) from e
    try:
        yield
    finally:
        lock.release()
