"""Vector index client interface and FAISS implementation.

Handles:
- Named indexes with a fixed dimension and metric
- Upsert by string id with metadata
- Metadata-filtered similarity queries
- Deletion by id list or by metadata filter
- Optional on-disk persistence, written on flush
"""
import asyncio
import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Set

import faiss
import numpy as np
import structlog

logger = structlog.get_logger()

SUPPORTED_METRICS = ("cosine", "dotproduct")


@dataclass
class VectorRecord:
    """One entry to upsert: id, vector and metadata."""

    id: str
    values: List[float]
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class QueryMatch:
    id: str
    score: float
    metadata: Dict[str, Any]


def matches_filter(metadata: Dict[str, Any], filter: Optional[Dict[str, Any]]) -> bool:
    """Check metadata against a filter; all clauses must hold.

    Supports plain equality and the $eq, $ne, $in, $nin and $exists operators.
    """
    if not filter:
        return True

    for key, condition in filter.items():
        present = key in metadata
        value = metadata.get(key)

        if not isinstance(condition, dict):
            if not present or value != condition:
                return False
            continue

        for op, operand in condition.items():
            if op == "$eq":
                ok = present and value == operand
            elif op == "$ne":
                ok = value != operand
            elif op == "$in":
                ok = present and value in operand
            elif op == "$nin":
                ok = value not in operand
            elif op == "$exists":
                ok = present == bool(operand)
            else:
                raise ValueError(f"Unsupported filter operator: {op}")
            if not ok:
                return False

    return True


class VectorIndexClient(ABC):
    """Vendor-neutral interface to a vector index service."""

    supports_delete_by_filter = False

    @abstractmethod
    async def list_indexes(self) -> List[str]: ...

    @abstractmethod
    async def create_index(self, name: str, dimension: int, metric: str) -> None: ...

    @abstractmethod
    async def describe_index_stats(self, name: str) -> Dict[str, Any]: ...

    @abstractmethod
    async def upsert(self, name: str, records: List[VectorRecord]) -> None: ...

    @abstractmethod
    async def query(
        self,
        name: str,
        vector: List[float],
        top_k: int,
        filter: Optional[Dict[str, Any]] = None,
    ) -> List[QueryMatch]: ...

    @abstractmethod
    async def delete_many(self, name: str, ids: List[str]) -> None: ...

    async def delete_by_filter(self, name: str, filter: Dict[str, Any]) -> int:
        raise NotImplementedError(f"{type(self).__name__} does not support filtered deletes")

    async def flush(self, name: str) -> None:
        """Persist pending writes. Clients that write through need not override."""


class _FAISSCollection:
    """One FAISS index plus its id and metadata tables."""

    def __init__(self, dimension: int, metric: str):
        self.dimension = dimension
        self.metric = metric
        self.index = faiss.IndexIDMap2(faiss.IndexFlatIP(dimension))
        self.labels: Dict[str, int] = {}
        self.ids: Dict[int, str] = {}
        self.metadata: Dict[int, Dict[str, Any]] = {}
        self.next_label = 0

    def prepare(self, vectors: List[List[float]]) -> np.ndarray:
        array = np.array(vectors, dtype=np.float32).reshape(len(vectors), -1)

        if array.shape[1] != self.dimension:
            raise ValueError(
                f"Embedding dimension mismatch: expected {self.dimension}, "
                f"got {array.shape[1]}"
            )

        if self.metric == "cosine":
            norms = np.linalg.norm(array, axis=1, keepdims=True)
            norms[norms == 0] = 1.0
            array = array / norms

        return np.ascontiguousarray(array, dtype=np.float32)

    def remove(self, labels: List[int]) -> None:
        if not labels:
            return
        self.index.remove_ids(np.array(labels, dtype=np.int64))
        for label in labels:
            chunk_id = self.ids.pop(label)
            self.labels.pop(chunk_id, None)
            self.metadata.pop(label, None)

    def to_state(self) -> Dict[str, Any]:
        return {
            "dimension": self.dimension,
            "metric": self.metric,
            "next_label": self.next_label,
            "entries": [
                {"label": label, "id": chunk_id, "metadata": self.metadata[label]}
                for label, chunk_id in self.ids.items()
            ],
        }


class FAISSVectorIndex(VectorIndexClient):
    """FAISS-based vector index with metadata filtering."""

    supports_delete_by_filter = True

    def __init__(self, index_dir: Optional[Path] = None):
        """Initialize the FAISS vector index.

        Args:
            index_dir: Directory for "<name>.index" / "<name>.json" files.
                Indexes are kept in memory only when not provided.
        """
        self.index_dir = Path(index_dir) if index_dir else None
        self._collections: Dict[str, _FAISSCollection] = {}
        self._dirty: Set[str] = set()
        self._lock = asyncio.Lock()

        if self.index_dir is not None and self.index_dir.exists():
            self._load_all()

        logger.info(
            "faiss_index_client_initialized",
            index_dir=str(self.index_dir) if self.index_dir else None,
            indexes=list(self._collections),
        )

    def _collection(self, name: str) -> _FAISSCollection:
        try:
            return self._collections[name]
        except KeyError:
            raise KeyError(f"Index not found: {name}") from None

    async def list_indexes(self) -> List[str]:
        return list(self._collections)

    async def create_index(self, name: str, dimension: int, metric: str = "cosine") -> None:
        if metric not in SUPPORTED_METRICS:
            raise ValueError(f"Unsupported metric {metric!r}; expected one of {SUPPORTED_METRICS}")

        async with self._lock:
            if name in self._collections:
                raise ValueError(f"Index already exists: {name}")
            self._collections[name] = _FAISSCollection(dimension, metric)
            self._dirty.add(name)

        logger.info("faiss_index_created", name=name, dimension=dimension, metric=metric)

    async def describe_index_stats(self, name: str) -> Dict[str, Any]:
        collection = self._collection(name)
        return {
            "name": name,
            "dimension": collection.dimension,
            "metric": collection.metric,
            "total_record_count": collection.index.ntotal,
            "ready": True,
        }

    async def upsert(self, name: str, records: List[VectorRecord]) -> None:
        if not records:
            return

        async with self._lock:
            collection = self._collection(name)
            vectors = collection.prepare([record.values for record in records])

            # Upsert replaces: drop any existing entries with the same ids first
            collection.remove(
                [collection.labels[r.id] for r in records if r.id in collection.labels]
            )

            # Later duplicates in one call win
            latest = {record.id: row for row, record in enumerate(records)}
            rows = sorted(latest.values())

            labels = []
            for row in rows:
                record = records[row]
                label = collection.next_label
                collection.next_label += 1
                collection.labels[record.id] = label
                collection.ids[label] = record.id
                collection.metadata[label] = dict(record.metadata)
                labels.append(label)

            collection.index.add_with_ids(vectors[rows], np.array(labels, dtype=np.int64))
            self._dirty.add(name)

        logger.debug("vectors_upserted", name=name, count=len(rows), total_vectors=collection.index.ntotal)

    async def query(
        self,
        name: str,
        vector: List[float],
        top_k: int,
        filter: Optional[Dict[str, Any]] = None,
    ) -> List[QueryMatch]:
        collection = self._collection(name)

        candidates = [
            label for label, metadata in collection.metadata.items()
            if matches_filter(metadata, filter)
        ]
        top_k = min(top_k, len(candidates))

        if top_k <= 0:
            return []

        query_vector = collection.prepare([vector])

        params = None
        if filter:
            candidate_array = np.array(candidates, dtype=np.int64)
            selector = faiss.IDSelectorBatch(len(candidate_array), faiss.swig_ptr(candidate_array))
            params = faiss.SearchParameters(sel=selector)

        scores, labels = collection.index.search(query_vector, top_k, params=params)

        matches = [
            QueryMatch(
                id=collection.ids[int(label)],
                score=float(score),
                metadata=dict(collection.metadata[int(label)]),
            )
            for score, label in zip(scores[0], labels[0])
            if label != -1 and int(label) in collection.ids
        ]

        logger.debug("vector_search_completed", name=name, top_k=top_k, results_found=len(matches))

        return matches

    async def delete_many(self, name: str, ids: List[str]) -> None:
        async with self._lock:
            collection = self._collection(name)
            labels = [collection.labels[i] for i in set(ids) if i in collection.labels]
            collection.remove(labels)
            self._dirty.add(name)

        logger.debug("vectors_deleted", name=name, count=len(labels))

    async def delete_by_filter(self, name: str, filter: Dict[str, Any]) -> int:
        if not filter:
            raise ValueError("Refusing to delete by an empty filter")

        async with self._lock:
            collection = self._collection(name)
            labels = [
                label for label, metadata in collection.metadata.items()
                if matches_filter(metadata, filter)
            ]
            collection.remove(labels)
            self._dirty.add(name)

        logger.debug("vectors_deleted_by_filter", name=name, count=len(labels))
        return len(labels)

    async def flush(self, name: str) -> None:
        """Write a modified index to disk off the event loop."""
        async with self._lock:
            if name not in self._dirty:
                return
            if self.index_dir is not None:
                await asyncio.to_thread(self._save, name)
            self._dirty.discard(name)

        logger.debug("faiss_index_flushed", name=name)

    def _paths(self, name: str):
        return self.index_dir / f"{name}.index", self.index_dir / f"{name}.json"

    def _save(self, name: str) -> None:
        """Save a FAISS index and its metadata to disk, when persistence is on."""
        if self.index_dir is None:
            return

        self.index_dir.mkdir(parents=True, exist_ok=True)
        collection = self._collections[name]
        index_path, metadata_path = self._paths(name)

        try:
            faiss.write_index(collection.index, str(index_path))
            with open(metadata_path, "w") as f:
                json.dump(collection.to_state(), f)
        except Exception as e:
            raise RuntimeError(f"Failed to save FAISS index {name}: {e}") from e

    def _load_all(self) -> None:
        for metadata_path in sorted(self.index_dir.glob("*.json")):
            name = metadata_path.stem
            index_path = metadata_path.with_suffix(".index")
            if not index_path.exists():
                logger.warning("faiss_index_file_missing", name=name, path=str(index_path))
                continue

            try:
                with open(metadata_path, "r") as f:
                    state = json.load(f)
                index = faiss.read_index(str(index_path))
            except Exception as e:
                raise RuntimeError(f"Failed to load FAISS index {name}: {e}") from e

            collection = _FAISSCollection(state["dimension"], state["metric"])
            collection.index = index
            collection.next_label = state["next_label"]
            for entry in state["entries"]:
                label = int(entry["label"])
                collection.labels[entry["id"]] = label
                collection.ids[label] = entry["id"]
                collection.metadata[label] = entry["metadata"]

            self._collections[name] = collection

            logger.info(
                "faiss_index_loaded",
                name=name,
                dimension=collection.dimension,
                vector_count=index.ntotal,
            )
