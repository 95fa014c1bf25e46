from __future__ import annotations

from typing import Protocol, Sequence
import numpy as np


class EmbeddingProvider(Protocol):
    model_id: str

    def embed_documents(self, texts: Sequence[str]) -> np.ndarray:
        """Return one vector per text, shape (len(texts), dims)."""
        ...

    def embed_query(self, query: str) -> np.ndarray:
        """Return a single vector, shape (dims,)."""
        ...
