import json
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol

from chatcore.rag.embeddings import EmbeddingGenerator, cosine_similarity
from chatcore.rag.types import Passage, RetrievalQuery


class PassageSearcher(Protocol):
    def search(self, query: RetrievalQuery) -> list[Passage]:
        """Return passages ranked by relevance, best first."""


@dataclass(frozen=True)
class IndexedPassage:
    id: str
    text: str
    vector: list[float]
    source_id: str
    org_id: str | None
    namespace: str | None
    metadata: dict[str, str]


class VectorPassageIndex:
    """In-memory cosine index over passages loaded from a JSONL file.

    Each line holds ``{"id", "text", "org_id", "namespace", "source_id", "metadata"}``.
    Passages without an ``org_id`` are visible to every org.
    """

    def __init__(self, embedder: EmbeddingGenerator, index_path: Path | None = None):
        self._embedder = embedder
        self._index_path = index_path
        self._lock = threading.Lock()
        self._passages: list[IndexedPassage] | None = None

    def add_records(self, records: list[dict[str, Any]]) -> int:
        parsed = self._embed_records(records)
        with self._lock:
            if self._passages is None:
                self._passages = self._load_file()
            self._passages.extend(parsed)
        return len(parsed)

    def search(self, query: RetrievalQuery) -> list[Passage]:
        if query.limit < 1 or not query.query.strip():
            return []
        passages = self._all_passages()
        candidates = [
            passage
            for passage in passages
            if passage.org_id in (None, query.org_id)
            and (query.namespace is None or passage.namespace == query.namespace)
        ]
        if not candidates:
            return []
        query_vector = self._embedder.embed_texts([query.query])[0]
        ranked = sorted(
            (
                Passage(
                    id=passage.id,
                    text=passage.text,
                    score=round(cosine_similarity(query_vector, passage.vector), 6),
                    source_id=passage.source_id,
                    org_id=passage.org_id,
                    namespace=passage.namespace,
                    metadata=passage.metadata,
                )
                for passage in candidates
            ),
            key=lambda item: item.score,
            reverse=True,
        )
        return [item for item in ranked if item.score > 0][: query.limit]

    def _all_passages(self) -> list[IndexedPassage]:
        with self._lock:
            if self._passages is None:
                self._passages = self._load_file()
            return list(self._passages)

    def _load_file(self) -> list[IndexedPassage]:
        if self._index_path is None or not self._index_path.exists():
            return []
        records: list[dict[str, Any]] = []
        with self._index_path.open("r", encoding="utf-8") as file_handle:
            for raw_line in file_handle:
                line = raw_line.strip()
                if not line:
                    continue
                parsed = json.loads(line)
                if isinstance(parsed, dict):
                    records.append(parsed)
        return self._embed_records(records)

    def _embed_records(self, records: list[dict[str, Any]]) -> list[IndexedPassage]:
        usable = [record for record in records if str(record.get("text", "")).strip()]
        vectors = self._embedder.embed_texts([str(record["text"]).strip() for record in usable])
        passages: list[IndexedPassage] = []
        for position, (record, vector) in enumerate(zip(usable, vectors, strict=True)):
            raw_metadata = record.get("metadata")
            metadata = (
                {str(key): str(value) for key, value in raw_metadata.items()}
                if isinstance(raw_metadata, dict)
                else {}
            )
            passages.append(
                IndexedPassage(
                    id=str(record.get("id") or record.get("chunk_id") or f"passage-{position}"),
                    text=str(record["text"]).strip(),
                    vector=vector,
                    source_id=str(record.get("source_id", "")),
                    org_id=str(record["org_id"]) if record.get("org_id") else None,
                    namespace=str(record["namespace"]) if record.get("namespace") else None,
                    metadata=metadata,
                )
            )
        return passages
