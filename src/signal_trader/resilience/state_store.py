"""Durable and in-memory snapshot stores for ``SystemState``."""

from __future__ import annotations

import os
import tempfile
from pathlib import Path

from pydantic import ValidationError

from signal_trader.errors import PersistenceError
from signal_trader.schemas import SystemState
from signal_trader.utils.logging import get_logger


class JsonFileStateStore:
    """One JSON document, replaced atomically (temp file + rename) on every save."""

    def __init__(self, path: Path) -> None:
        self._path = path
        self._logger = get_logger("signal_trader.resilience.state_store")

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> SystemState | None:
        if not self._path.exists():
            self._logger.debug("state_file_missing", path=str(self._path))
            return None
        try:
            raw = self._path.read_text(encoding="utf-8")
            return SystemState.model_validate_json(raw)
        except (OSError, ValidationError) as exc:
            raise PersistenceError(f"state_load_failed: {exc}") from exc

    def save(self, state: SystemState) -> None:
        payload = state.model_dump_json(by_alias=True, indent=2)
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            fd, temp_path = tempfile.mkstemp(
                dir=self._path.parent,
                prefix=".state_",
                suffix=".json.tmp",
            )
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    f.write(payload)
                os.replace(temp_path, self._path)
            except BaseException:
                Path(temp_path).unlink(missing_ok=True)
                raise
        except OSError as exc:
            raise PersistenceError(f"state_save_failed: {exc}") from exc


class InMemoryStateStore:
    """Fallback store. Survives a session restart, not a process restart."""

    def __init__(self, initial: SystemState | None = None) -> None:
        self._state = initial.model_copy(deep=True) if initial is not None else None

    def load(self) -> SystemState | None:
        return self._state.model_copy(deep=True) if self._state is not None else None

    def save(self, state: SystemState) -> None:
        self._state = state.model_copy(deep=True)
