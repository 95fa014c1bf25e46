from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Sequence
import json
import urllib.error
import urllib.request

import numpy as np

from ..errors import EmbeddingProviderError


class OllamaHTTPError(Exception):
    """HTTP failure from the Ollama endpoint, carrying the status for classification."""

    def __init__(self, status_code: int, body: str, headers: Any = None) -> None:
        self.status_code = status_code
        self.headers = headers
        super().__init__(f"Ollama returned HTTP {status_code}: {body[:200]}")


@dataclass
class OllamaEmbedder:
    """Adapter for a local Ollama `/api/embed` endpoint (batch input)."""
    model_id: str
    endpoint: str = "http://127.0.0.1:11434/api/embed"
    timeout_s: float = 30.0
    dims: int = 0

    def _call(self, inputs: list[str]) -> list[list[float]]:
        payload = {"model": self.model_id, "input": inputs}
        data = json.dumps(payload).encode("utf-8")
        req = urllib.request.Request(self.endpoint, data=data, headers={"Content-Type": "application/json"})
        try:
            with urllib.request.urlopen(req, timeout=self.timeout_s) as resp:
                out = json.loads(resp.read().decode("utf-8"))
        except urllib.error.HTTPError as e:
            body = e.read().decode("utf-8", errors="replace") if e.fp else ""
            raise OllamaHTTPError(e.code, body, e.headers) from e
        vecs = out.get("embeddings")
        if not isinstance(vecs, list) or len(vecs) != len(inputs):
            raise EmbeddingProviderError(f"Unexpected Ollama response: {str(out)[:200]}")
        return [[float(x) for x in v] for v in vecs]

    def embed_documents(self, texts: Sequence[str]) -> np.ndarray:
        if not texts:
            return np.zeros((0, self.dims), dtype=np.float32)
        arr = np.array(self._call(list(texts)), dtype=np.float32)
        if self.dims == 0:
            self.dims = int(arr.shape[1])
        return arr

    def embed_query(self, query: str) -> np.ndarray:
        arr = np.array(self._call([query])[0], dtype=np.float32)
        if self.dims == 0:
            self.dims = int(arr.shape[0])
        return arr
