"""Session persistence boundary.

The orchestrator only needs ``load`` and ``save``. Two implementations ship
with the package: an in-memory map for tests and embedding, and a directory
of JSON files used by the CLI.
"""

from __future__ import annotations

import logging
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Protocol

from ..errors import SessionNotFound
from ..models import Session

logger = logging.getLogger(__name__)


class SessionStore(Protocol):
    def load(self, session_id: str) -> Session: ...
    def save(self, session: Session) -> None: ...


class InMemorySessionStore:
    """Dict-backed store. Sessions are copied in and out so callers never share state."""

    def __init__(self) -> None:
        self._sessions: dict[str, Session] = {}

    def load(self, session_id: str) -> Session:
        try:
            return self._sessions[session_id].model_copy(deep=True)
        except KeyError:
            raise SessionNotFound(session_id) from None

    def save(self, session: Session) -> None:
        session.updated_at = datetime.now(timezone.utc)
        self._sessions[session.id] = session.model_copy(deep=True)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions


_SAFE_ID_RE = re.compile(r"^[A-Za-z0-9_.-]+$")


class JsonFileSessionStore:
    """One ``<session_id>.json`` file per session under *directory*."""

    def __init__(self, directory: str | Path) -> None:
        self.directory = Path(directory)

    def _path(self, session_id: str) -> Path:
        if not _SAFE_ID_RE.match(session_id) or session_id in {".", ".."}:
            raise SessionNotFound(session_id)
        return self.directory / f"{session_id}.json"

    def load(self, session_id: str) -> Session:
        path = self._path(session_id)
        if not path.exists():
            raise SessionNotFound(session_id)
        return Session.model_validate_json(path.read_text(encoding="utf-8"))

    def save(self, session: Session) -> None:
        session.updated_at = datetime.now(timezone.utc)
        path = self._path(session.id)
        self.directory.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(".json.tmp")
        tmp.write_text(session.model_dump_json(indent=2), encoding="utf-8")
        tmp.replace(path)
        logger.debug("Saved session %s to %s", session.id, path)

    def list_ids(self) -> list[str]:
        if not self.directory.exists():
            return []
        return sorted(p.stem for p in self.directory.glob("*.json"))
