"""Read-only access to procedure documents."""

from __future__ import annotations

from typing import Dict, Iterable, List, Optional, Protocol

from sopflow.schemas.workflow_state import Document


class DocumentStore(Protocol):
    async def get_all_active(self) -> List[Document]:
        ...

    async def find_by_id(self, document_id: str) -> Optional[Document]:
        ...


class InMemoryDocumentStore:
    """Dict-backed store, used in development and tests."""

    def __init__(self, documents: Optional[Iterable[Document]] = None):
        self._documents: Dict[str, Document] = {d.id: d for d in (documents or [])}

    async def get_all_active(self) -> List[Document]:
        return list(self._documents.values())

    async def find_by_id(self, document_id: str) -> Optional[Document]:
        return self._documents.get(document_id)
