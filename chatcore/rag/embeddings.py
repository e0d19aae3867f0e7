from __future__ import annotations

import re
from hashlib import sha256
from math import sqrt
from typing import Protocol

import httpx


class EmbeddingGenerator(Protocol):
    def embed_texts(self, texts: list[str]) -> list[list[float]]:
        """Return one embedding vector per input text, preserving order."""


class HashEmbeddingGenerator:
    """Deterministic token-hash embeddings for offline retrieval."""

    def __init__(self, embedding_dim: int):
        if embedding_dim < 1:
            raise ValueError("embedding_dim must be >= 1")
        self._embedding_dim = embedding_dim

    def embed_texts(self, texts: list[str]) -> list[list[float]]:
        return [self._embed(text) for text in texts]

    def _embed(self, text: str) -> list[float]:
        vector = [0.0] * self._embedding_dim
        for token in re.findall(r"[a-z0-9]+", text.lower()):
            digest = sha256(token.encode("utf-8")).digest()
            slot = int.from_bytes(digest[:2], byteorder="big") % self._embedding_dim
            vector[slot] += 1.0 if digest[2] % 2 == 0 else -1.0
        return normalize(vector)


class HTTPEmbeddingGenerator:
    """Calls an OpenAI-compatible ``/embeddings`` endpoint."""

    def __init__(
        self,
        endpoint: str,
        model: str,
        embedding_dim: int,
        api_key: str | None = None,
        timeout_seconds: float = 10.0,
        transport: httpx.BaseTransport | None = None,
    ):
        if embedding_dim < 1:
            raise ValueError("embedding_dim must be >= 1")
        self._endpoint = endpoint
        self._model = model
        self._embedding_dim = embedding_dim
        self._api_key = api_key
        self._timeout_seconds = timeout_seconds
        self._transport = transport

    def embed_texts(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []

        headers = {"content-type": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        if self._transport is None:
            client = httpx.Client(timeout=self._timeout_seconds)
        else:
            client = httpx.Client(timeout=self._timeout_seconds, transport=self._transport)
        with client:
            response = client.post(
                self._endpoint, headers=headers, json={"model": self._model, "input": texts}
            )
        if response.status_code != 200:
            raise RuntimeError(
                f"embeddings request failed ({response.status_code}): {response.text[:200]}"
            )

        data = response.json().get("data")
        if not isinstance(data, list):
            raise RuntimeError("embeddings response missing data array")
        by_index: dict[int, list[float]] = {}
        for item in data:
            if not isinstance(item, dict):
                continue
            index = item.get("index")
            embedding = item.get("embedding")
            if not isinstance(index, int) or not isinstance(embedding, list):
                continue
            vector = [float(value) for value in embedding]
            if len(vector) != self._embedding_dim:
                raise RuntimeError(
                    f"unexpected embedding dimension: expected {self._embedding_dim}, "
                    f"got {len(vector)}"
                )
            by_index[index] = vector
        if set(by_index) != set(range(len(texts))):
            raise RuntimeError("embeddings response missing one or more indexes")
        return [by_index[idx] for idx in range(len(texts))]


def normalize(vector: list[float]) -> list[float]:
    norm = sqrt(sum(value * value for value in vector))
    if norm == 0:
        return vector
    return [round(value / norm, 6) for value in vector]


def cosine_similarity(left: list[float], right: list[float]) -> float:
    if len(left) != len(right):
        return 0.0
    dot = sum(a * b for a, b in zip(left, right, strict=True))
    left_norm = sqrt(sum(a * a for a in left))
    right_norm = sqrt(sum(b * b for b in right))
    if left_norm == 0 or right_norm == 0:
        return 0.0
    return dot / (left_norm * right_norm)
