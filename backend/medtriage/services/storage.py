"""Document and blob storage collaborators.

The pipeline only needs key-value document CRUD with equality/range filters
and a file store that hands back a retrieval URL. The in-memory document store
and the local-directory blob store serve development and tests; production
deployments plug in their own implementations of the same interfaces.
"""

from __future__ import annotations

import asyncio
import copy
import logging
import re
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from medtriage.core.errors import StorageError

logger = logging.getLogger(__name__)

# (field, operator, value); field may be a dotted path such as "patientInfo.patientId".
Filter = Tuple[str, str, Any]

_OPERATORS = {
    "==": lambda left, right: left == right,
    ">=": lambda left, right: left is not None and left >= right,
    "<=": lambda left, right: left is not None and left <= right,
}


def _lookup(doc: Mapping[str, Any], path: str) -> Any:
    value: Any = doc
    for part in path.split("."):
        if not isinstance(value, Mapping):
            return None
        value = value.get(part)
    return value


def _apply_patch(doc: Dict[str, Any], patch: Mapping[str, Any]) -> None:
    for key, value in patch.items():
        target = doc
        parts = key.split(".")
        for part in parts[:-1]:
            nested = target.get(part)
            if not isinstance(nested, dict):
                nested = {}
                target[part] = nested
            target = nested
        target[parts[-1]] = copy.deepcopy(value)


class DocumentStore(ABC):
    @abstractmethod
    async def create(self, collection: str, doc: Mapping[str, Any], doc_id: Optional[str] = None) -> str:
        """Store ``doc`` and return its id (generated when ``doc_id`` is None)."""

    @abstractmethod
    async def update(self, collection: str, doc_id: str, patch: Mapping[str, Any]) -> None:
        """Merge ``patch`` into an existing document; dotted keys update nested fields."""

    @abstractmethod
    async def get(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        ...

    @abstractmethod
    async def query(
        self,
        collection: str,
        filters: Sequence[Filter] = (),
        order_by: Optional[str] = None,
        descending: bool = True,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        ...

    @abstractmethod
    async def delete(self, collection: str, doc_id: str) -> None:
        ...


class InMemoryDocumentStore(DocumentStore):
    """Dict-backed store. Returned documents are copies and carry their ``id``."""

    def __init__(self) -> None:
        self._collections: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._lock = asyncio.Lock()

    def _collection(self, name: str) -> Dict[str, Dict[str, Any]]:
        return self._collections.setdefault(name, {})

    async def create(self, collection: str, doc: Mapping[str, Any], doc_id: Optional[str] = None) -> str:
        async with self._lock:
            docs = self._collection(collection)
            doc_id = doc_id or uuid.uuid4().hex
            if doc_id in docs:
                raise StorageError(f"Document {collection}/{doc_id} already exists")
            docs[doc_id] = copy.deepcopy(dict(doc))
            return doc_id

    async def update(self, collection: str, doc_id: str, patch: Mapping[str, Any]) -> None:
        async with self._lock:
            doc = self._collection(collection).get(doc_id)
            if doc is None:
                raise StorageError(f"Document {collection}/{doc_id} does not exist")
            _apply_patch(doc, patch)

    async def get(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        doc = self._collection(collection).get(doc_id)
        if doc is None:
            return None
        return {"id": doc_id, **copy.deepcopy(doc)}

    async def query(
        self,
        collection: str,
        filters: Sequence[Filter] = (),
        order_by: Optional[str] = None,
        descending: bool = True,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        for _, operator, _ in filters:
            if operator not in _OPERATORS:
                raise StorageError(f"Unsupported filter operator '{operator}'")

        matches = [
            {"id": doc_id, **copy.deepcopy(doc)}
            for doc_id, doc in self._collection(collection).items()
            if all(_OPERATORS[op](_lookup(doc, field), value) for field, op, value in filters)
        ]
        if order_by:
            present = [doc for doc in matches if _lookup(doc, order_by) is not None]
            missing = [doc for doc in matches if _lookup(doc, order_by) is None]
            present.sort(key=lambda doc: _lookup(doc, order_by), reverse=descending)
            matches = present + missing
        if limit is not None:
            matches = matches[:limit]
        return matches

    async def delete(self, collection: str, doc_id: str) -> None:
        async with self._lock:
            self._collection(collection).pop(doc_id, None)


@dataclass(frozen=True)
class StoredBlob:
    url: str
    name: str


class BlobStore(ABC):
    @abstractmethod
    async def upload(self, data: bytes, name: str, content_type: str) -> StoredBlob:
        ...

    @abstractmethod
    async def delete(self, name: str) -> None:
        ...


_UNSAFE_NAME = re.compile(r"[^A-Za-z0-9._-]+")


def safe_blob_name(filename: str, prefix: str = "medical-images") -> str:
    """Unique, path-safe blob name that keeps the original file name readable."""
    stem = _UNSAFE_NAME.sub("_", Path(filename or "upload").name).strip("._") or "upload"
    return f"{prefix}/{uuid.uuid4().hex}_{stem}"


class LocalBlobStore(BlobStore):
    """Writes blobs below ``root`` and serves them from ``public_url``."""

    def __init__(self, root: Path | str, public_url: str) -> None:
        self._root = Path(root)
        self._public_url = public_url.rstrip("/")

    def _path(self, name: str) -> Path:
        path = (self._root / name).resolve()
        if self._root.resolve() not in path.parents:
            raise StorageError(f"Blob name escapes the storage root: {name}")
        return path

    def _write(self, path: Path, data: bytes) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)

    async def upload(self, data: bytes, name: str, content_type: str) -> StoredBlob:
        path = self._path(name)
        try:
            await asyncio.to_thread(self._write, path, data)
        except OSError as exc:
            raise StorageError(f"Failed to store blob {name}: {exc}") from exc
        logger.info("Stored blob %s (%d bytes, %s)", name, len(data), content_type)
        return StoredBlob(url=f"{self._public_url}/{name}", name=name)

    async def delete(self, name: str) -> None:
        path = self._path(name)
        try:
            await asyncio.to_thread(path.unlink, True)
        except OSError as exc:
            raise StorageError(f"Failed to delete blob {name}: {exc}") from exc
