"""Versioned msgspec JSON state files shared by the file-backed stores."""

from __future__ import annotations

import os
from collections.abc import Callable
from pathlib import Path
from typing import Any, Generic, TypeVar

import anyio
import msgspec

T = TypeVar("T", bound=msgspec.Struct)


class JsonStateStore(Generic[T]):
    """Holds one decoded state object and keeps it in sync with *path*.

    Subclasses take ``self._lock``, call ``_reload_locked_if_needed()`` before
    reading and ``_save_locked()`` after mutating ``self._state``.
    """

    def __init__(
        self,
        path: Path,
        *,
        version: int,
        state_type: type[T],
        state_factory: Callable[[], T],
        log_prefix: str,
        logger: Any,
    ) -> None:
        self._path = path
        self._version = version
        self._state_type = state_type
        self._state_factory = state_factory
        self._log_prefix = log_prefix
        self._logger = logger
        self._lock = anyio.Lock()
        self._loaded = False
        self._mtime_ns: int | None = None
        self._state: T = state_factory()

    @property
    def path(self) -> Path:
        return self._path

    def _stat_mtime_ns(self) -> int | None:
        try:
            return self._path.stat().st_mtime_ns
        except FileNotFoundError:
            return None

    def _reload_locked_if_needed(self) -> None:
        mtime_ns = self._stat_mtime_ns()
        if self._loaded and mtime_ns == self._mtime_ns:
            return
        self._load_locked(mtime_ns)

    def _load_locked(self, mtime_ns: int | None) -> None:
        self._loaded = True
        self._mtime_ns = mtime_ns
        if mtime_ns is None:
            self._state = self._state_factory()
            return
        try:
            payload = msgspec.json.decode(self._path.read_bytes(), type=self._state_type)
        except (OSError, msgspec.DecodeError) as exc:
            # Corrupt or unreadable files are replaced on the next save.
            self._logger.warning(
                f"{self._log_prefix}.load_failed",
                path=str(self._path),
                error=str(exc),
            )
            self._state = self._state_factory()
            return
        if getattr(payload, "version", None) != self._version:
            self._logger.warning(
                f"{self._log_prefix}.version_mismatch",
                path=str(self._path),
                version=getattr(payload, "version", None),
                expected=self._version,
            )
            self._state = self._state_factory()
            return
        self._state = payload

    def _save_locked(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_suffix(f"{self._path.suffix}.tmp")
        tmp_path.write_bytes(msgspec.json.format(msgspec.json.encode(self._state)))
        os.replace(tmp_path, self._path)
        self._mtime_ns = self._stat_mtime_ns()
