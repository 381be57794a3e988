"""File helpers for the `.phasegate/` directory: an inter-process lock and
atomic JSON/YAML documents."""

from __future__ import annotations

import json
import os
import sys
import tempfile
from pathlib import Path
from typing import IO, Any, Optional

import yaml

from .constants import WINDOWS_LOCK_BYTES

if sys.platform == "win32":
    import msvcrt

    def _acquire(handle: IO[str]) -> None:
        handle.seek(0)
        msvcrt.locking(handle.fileno(), msvcrt.LK_LOCK, WINDOWS_LOCK_BYTES)

    def _release(handle: IO[str]) -> None:
        handle.seek(0)
        msvcrt.locking(handle.fileno(), msvcrt.LK_UNLCK, WINDOWS_LOCK_BYTES)

else:
    import fcntl

    def _acquire(handle: IO[str]) -> None:
        fcntl.flock(handle.fileno(), fcntl.LOCK_EX)

    def _release(handle: IO[str]) -> None:
        fcntl.flock(handle.fileno(), fcntl.LOCK_UN)


YAML_SUFFIXES = {".yaml", ".yml"}


class FileLock:
    """Exclusive advisory lock held on a sidecar file.

    Blocks until the lock is free. The holder's pid is written into the file
    so a stuck lock can be traced by hand.
    """

    def __init__(self, lock_path: Path):
        self.lock_path = Path(lock_path)
        self._handle: Optional[IO[str]] = None

    @property
    def held(self) -> bool:
        return self._handle is not None

    def __enter__(self) -> "FileLock":
        self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        handle = open(self.lock_path, "a+", encoding="utf-8")
        try:
            _acquire(handle)
        except OSError:
            handle.close()
            raise
        handle.seek(0)
        handle.truncate()
        handle.write(f"{os.getpid()}\n")
        handle.flush()
        self._handle = handle
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        handle, self._handle = self._handle, None
        if handle is None:
            return
        try:
            _release(handle)
        finally:
            handle.close()


def write_text_atomic(path: Path, text: str) -> None:
    """Replace `path` with `text` so readers never observe a partial file."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(text)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


def dump_document(path: Path, data: dict[str, Any]) -> None:
    """Write `data` as YAML or JSON, chosen by the file suffix."""
    if path.suffix in YAML_SUFFIXES:
        text = yaml.safe_dump(data, sort_keys=False, allow_unicode=True, default_flow_style=False)
    else:
        text = json.dumps(data, indent=2, ensure_ascii=False) + "\n"
    write_text_atomic(path, text)


def read_document(path: Path) -> tuple[Optional[dict[str, Any]], Optional[str]]:
    """Read a YAML or JSON mapping.

    Returns:
        `(data, None)` on success, `(None, None)` when the file does not
        exist and `(None, message)` when it cannot be read or is not a
        mapping. An empty YAML file reads as an empty mapping.
    """
    try:
        raw = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return None, None
    except OSError as exc:
        return None, f"{path.name}: {exc.strerror or exc}"

    try:
        data = yaml.safe_load(raw) if path.suffix in YAML_SUFFIXES else json.loads(raw)
    except yaml.YAMLError as exc:
        return None, f"{path.name}: YAMLError: {exc}"
    except json.JSONDecodeError as exc:
        return None, f"{path.name}: JSONDecodeError: {exc}"

    if data is None and path.suffix in YAML_SUFFIXES:
        return {}, None
    if not isinstance(data, dict):
        return None, f"{path.name}: expected a mapping, got {type(data).__name__}"
    return data, None
