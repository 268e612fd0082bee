"""
In-memory knowledge store used to supply planning context.

Keyword search is a linear substring scan and embeddings are character-code
hashes, good enough for local similarity but not semantic. A real vector
backend can replace this class as long as it keeps the same methods.
"""
import json
import math
import time
import uuid
import logging
import threading
from datetime import datetime
from typing import Dict, List, Any, Optional

logger = logging.getLogger(__name__)

EMBEDDING_DIMENSIONS = 384
JSON_MATCH_SCORE = 0.5


def _to_json(value: Any, indent: Optional[int] = None) -> str:
    if hasattr(value, "to_dict"):
        value = value.to_dict()
    return json.dumps(value, indent=indent, default=str)


class KnowledgeStore:
    """Generic key/value store plus a toy document index"""

    def __init__(self, dimensions: int = EMBEDDING_DIMENSIONS):
        self.dimensions = dimensions
        self.storage: Dict[str, Dict[str, Any]] = {}
        self.documents: Dict[str, Dict[str, Any]] = {}
        self.embeddings: Dict[str, List[float]] = {}
        self.lock = threading.RLock()

    def store(self, key: str, value: Any, metadata: Optional[Dict[str, Any]] = None):
        """Upsert a value under key"""
        with self.lock:
            self.storage[key] = {
                "id": key,
                "value": value,
                "metadata": metadata,
                "timestamp": datetime.now(),
            }

    def retrieve(self, key: str) -> Any:
        with self.lock:
            item = self.storage.get(key)
        return item["value"] if item else None

    def embed(self, text: str) -> List[float]:
        """Deterministic pseudo-embedding folded from character codes"""
        embedding = [0.0] * self.dimensions
        for i, word in enumerate(text.lower().split()):
            for j, char in enumerate(word):
                embedding[(ord(char) + i + j) % self.dimensions] += 1

        magnitude = math.sqrt(sum(v * v for v in embedding))
        if magnitude > 0:
            embedding = [v / magnitude for v in embedding]
        return embedding

    def add_document(self, content: str, metadata: Optional[Dict[str, Any]] = None) -> str:
        """Index a document and return its generated id"""
        doc_id = f"doc_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"
        embedding = self.embed(content)

        with self.lock:
            self.documents[doc_id] = {
                "content": content,
                "metadata": {
                    **(metadata or {}),
                    "added_at": datetime.now().isoformat(),
                    "word_count": len(content.split()),
                },
                "embedding": embedding,
            }
            self.embeddings[doc_id] = embedding

        logger.debug(f"Document {doc_id} added to knowledge store")
        return doc_id

    def delete_document(self, doc_id: str):
        with self.lock:
            removed = self.documents.pop(doc_id, None)
            self.embeddings.pop(doc_id, None)
        if removed is None:
            logger.debug(f"Document {doc_id} not present, nothing to delete")

    def search(self, query: str, limit: int = 10) -> List[Dict[str, Any]]:
        """Case-insensitive substring search over documents and entries"""
        query_lower = query.lower()
        if not query_lower:
            return []

        results = []
        with self.lock:
            for doc_id, doc in self.documents.items():
                score = self._substring_score(doc["content"], query_lower)
                if score is not None:
                    results.append({
                        "id": doc_id,
                        "content": doc["content"],
                        "score": score,
                        "metadata": doc["metadata"],
                    })

            for key, item in self.storage.items():
                value = item["value"]
                if value is None:
                    continue
                if isinstance(value, str):
                    score = self._substring_score(value, query_lower)
                    if score is not None:
                        results.append({
                            "id": key,
                            "content": value,
                            "score": score,
                            "metadata": item["metadata"],
                        })
                elif query_lower in _to_json(value).lower():
                    results.append({
                        "id": key,
                        "content": _to_json(value, indent=2),
                        "score": JSON_MATCH_SCORE,
                        "metadata": item["metadata"],
                    })

        results.sort(key=lambda r: r["score"], reverse=True)
        return results[:max(limit, 0)]

    @staticmethod
    def _substring_score(content: str, query_lower: str) -> Optional[float]:
        matches = content.lower().count(query_lower)
        if not matches:
            return None
        return matches / len(content) * 1000

    def search_similar(self, text: str, limit: int = 5) -> List[Dict[str, Any]]:
        """Rank documents by cosine similarity of their embeddings"""
        query_embedding = self.embed(text)
        with self.lock:
            results = [
                {
                    "id": doc_id,
                    "content": doc["content"],
                    "score": self.cosine_similarity(query_embedding, doc["embedding"]),
                    "metadata": doc["metadata"],
                }
                for doc_id, doc in self.documents.items()
            ]

        results.sort(key=lambda r: r["score"], reverse=True)
        return results[:max(limit, 0)]

    @staticmethod
    def cosine_similarity(a: List[float], b: List[float]) -> float:
        if len(a) != len(b):
            raise ValueError("Vectors must have the same length")

        dot = sum(x * y for x, y in zip(a, b))
        norm_a = math.sqrt(sum(x * x for x in a))
        norm_b = math.sqrt(sum(y * y for y in b))
        if norm_a == 0 or norm_b == 0:
            return 0.0
        return dot / (norm_a * norm_b)

    def get_document_count(self) -> int:
        with self.lock:
            return len(self.documents)

    def get_storage_stats(self) -> Dict[str, int]:
        with self.lock:
            total_size = sum(len(doc["content"]) for doc in self.documents.values())
            total_size += sum(len(_to_json(item)) for item in self.storage.values())
            return {
                "documents": len(self.documents),
                "storage": len(self.storage),
                "total_size": total_size,
            }

    def batch_store(self, items: List[Dict[str, Any]]):
        for item in items:
            self.store(item["key"], item["value"], item.get("metadata"))

    def batch_retrieve(self, keys: List[str]) -> Dict[str, Any]:
        return {key: self.retrieve(key) for key in keys}

    def export_data(self) -> Dict[str, List[Dict[str, Any]]]:
        with self.lock:
            storage = [
                {"key": key, "value": item["value"], "metadata": item["metadata"]}
                for key, item in self.storage.items()
            ]
            documents = [
                {"id": doc_id, "content": doc["content"], "metadata": doc["metadata"]}
                for doc_id, doc in self.documents.items()
            ]
        return {"storage": storage, "documents": documents}

    def import_data(self, data: Dict[str, List[Dict[str, Any]]]):
        """Load entries and documents, keeping the document ids given"""
        self.batch_store(data.get("storage", []))

        for doc in data.get("documents", []):
            embedding = self.embed(doc["content"])
            with self.lock:
                self.documents[doc["id"]] = {
                    "content": doc["content"],
                    "metadata": doc.get("metadata") or {},
                    "embedding": embedding,
                }
                self.embeddings[doc["id"]] = embedding
