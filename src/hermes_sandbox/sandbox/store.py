"""Chroma-backed persistence for session records the substrate cannot hold itself.

Cloud sandboxes are ephemeral and carry only a few labels, so the orchestrator
keeps the full record locally. Each session is one document (the record as JSON)
with scalar metadata for filtering.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Iterable, Protocol

from ..sessions import ProviderType, Session, SessionStatus

logger = logging.getLogger(__name__)


class ChromaUnavailableError(RuntimeError):
    """Raised when the Chroma client cannot be constructed."""


class CollectionProtocol(Protocol):
    """Minimal Chroma collection API used by the session store."""

    def upsert(
        self,
        *,
        documents: Iterable[str],
        metadatas: Iterable[dict[str, Any]],
        ids: Iterable[str],
    ) -> None:
        ...

    def get(
        self,
        *,
        ids: Iterable[str] | None = None,
        where: dict[str, Any] | None = None,
        limit: int | None = None,
    ) -> dict[str, list[Any]]:
        ...

    def delete(self, *, ids: Iterable[str]) -> None:
        ...


class ClientProtocol(Protocol):
    def get_or_create_collection(self, name: str) -> CollectionProtocol:
        ...


def _record_id(provider: ProviderType, session_id: str) -> str:
    return f"{provider.value}:{session_id}"


class SessionStore:
    """Keyed storage of session records, addressed by (provider, id)."""

    def __init__(
        self,
        path: Path,
        *,
        collection_name: str = "hermes_sessions",
        client_factory: Callable[[], ClientProtocol] | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._path = Path(path)
        self._collection_name = collection_name
        self._client_factory = client_factory or self._default_client_factory
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._client: ClientProtocol | None = None
        self._collection: CollectionProtocol | None = None

    def _default_client_factory(self) -> ClientProtocol:
        try:
            import chromadb
        except ImportError as exc:  # pragma: no cover - depends on environment
            raise ChromaUnavailableError(
                "chromadb package is not installed; cloud sessions cannot be tracked"
            ) from exc

        self._path.mkdir(parents=True, exist_ok=True)
        return chromadb.PersistentClient(path=str(self._path))

    def _ensure_collection(self) -> CollectionProtocol:
        if self._collection is None:
            client = self._client or self._client_factory()
            self._client = client
            self._collection = client.get_or_create_collection(self._collection_name)
        return self._collection

    def _metadata(self, session: Session) -> dict[str, Any]:
        # Chroma rejects None metadata values
        metadata: dict[str, Any] = {
            "session_id": session.id,
            "provider": session.provider.value,
            "name": session.name,
            "status": session.status.value,
            "created": session.created,
            "updated_at": self._clock().isoformat(),
        }
        if session.exit_code is not None:
            metadata["exit_code"] = session.exit_code
        return metadata

    def _convert(self, result: dict[str, list[Any]]) -> list[Session]:
        sessions: list[Session] = []
        for record_id, document in zip(result.get("ids", []), result.get("documents", [])):
            try:
                sessions.append(Session.model_validate_json(document))
            except ValueError as exc:
                logger.warning("Skipping unreadable session record", extra={"record_id": record_id, "error": str(exc)})
        sessions.sort(key=lambda session: session.created, reverse=True)
        return sessions

    def upsert(self, session: Session) -> Session:
        collection = self._ensure_collection()
        collection.upsert(
            documents=[session.model_dump_json()],
            metadatas=[self._metadata(session)],
            ids=[_record_id(session.provider, session.id)],
        )
        return session

    def get(self, provider: ProviderType, session_id: str) -> Session | None:
        collection = self._ensure_collection()
        found = self._convert(collection.get(ids=[_record_id(provider, session_id)]))
        return found[0] if found else None

    def list(
        self,
        provider: ProviderType | None = None,
        status: SessionStatus | None = None,
    ) -> list[Session]:
        clauses = []
        if provider is not None:
            clauses.append({"provider": provider.value})
        if status is not None:
            clauses.append({"status": status.value})
        where: dict[str, Any] | None
        if len(clauses) > 1:
            where = {"$and": clauses}
        else:
            where = clauses[0] if clauses else None
        collection = self._ensure_collection()
        return self._convert(collection.get(where=where))

    def update_snapshot(self, provider: ProviderType, session_id: str, snapshot_slug: str | None) -> Session | None:
        current = self.get(provider, session_id)
        if current is None:
            return None
        return self.upsert(current.model_copy(update={"snapshot_slug": snapshot_slug}))

    def delete(self, provider: ProviderType, session_id: str) -> None:
        collection = self._ensure_collection()
        collection.delete(ids=[_record_id(provider, session_id)])


__all__ = ["ChromaUnavailableError", "ClientProtocol", "CollectionProtocol", "SessionStore"]
