from __future__ import annotations

import threading
import time
from collections import OrderedDict
from typing import Iterable, List, Optional, Sequence

import numpy as np

from lorapersona.logging import get_logger
from lorapersona.service import kernels
from lorapersona.service.errors import DimensionMismatchError
from lorapersona.storage.models import UserLoRAAdapter

logger = get_logger(__name__)

# EMA weight of the newest latency sample
LATENCY_EMA_ALPHA = 0.1
# Samples at or above this are treated as outliers (GC pauses, cold caches)
LATENCY_SAMPLE_CEILING_MS = 10.0
# Least recently sampled users are evicted beyond this many entries
LATENCY_MAX_USERS = 10_000


class InferenceLatencyTracker:
    """Per-user exponential moving average of forward-pass latency.

    Adapters are immutable, so the running average lives here and is folded
    into the adapter metadata when the next version is produced.
    """

    def __init__(
        self,
        *,
        alpha: float = LATENCY_EMA_ALPHA,
        ceiling_ms: float = LATENCY_SAMPLE_CEILING_MS,
        max_users: int = LATENCY_MAX_USERS,
    ) -> None:
        self.alpha = alpha
        self.ceiling_ms = ceiling_ms
        self.max_users = max_users
        self._averages: OrderedDict[str, float] = OrderedDict()
        self._lock = threading.Lock()

    def record(self, user_id: str, elapsed_ms: float, *, baseline: float = 0.0) -> bool:
        if elapsed_ms >= self.ceiling_ms:
            return False
        with self._lock:
            previous = self._averages.get(user_id, baseline)
            self._averages[user_id] = self.alpha * elapsed_ms + (1 - self.alpha) * previous
            self._averages.move_to_end(user_id)
            while len(self._averages) > self.max_users:
                self._averages.popitem(last=False)
        return True

    def average_ms(self, user_id: str) -> Optional[float]:
        with self._lock:
            return self._averages.get(user_id)

    def forget(self, user_id: str) -> None:
        with self._lock:
            self._averages.pop(user_id, None)

    def __len__(self) -> int:
        with self._lock:
            return len(self._averages)


class ForwardEngine:
    """Applies a user's adapter to base content embeddings."""

    def __init__(self, latency_tracker: Optional[InferenceLatencyTracker] = None) -> None:
        self.latency_tracker = (
            latency_tracker if latency_tracker is not None else InferenceLatencyTracker()
        )

    def forward(
        self,
        base_embedding: Sequence[float] | np.ndarray,
        adapter: UserLoRAAdapter,
        *,
        track_latency: bool = True,
    ) -> np.ndarray:
        """Return base + (scaling_factor / rank) * B @ (A @ base).

        Raises:
            DimensionMismatchError: base_embedding length differs from the
                adapter's embedding_dim.
        """
        start = time.perf_counter()
        base = kernels.as_vector(base_embedding)
        if base.size != adapter.embedding_dim:
            raise DimensionMismatchError(
                f"Embedding dimension mismatch: expected {adapter.embedding_dim}, got {base.size}",
                detail={"expected": adapter.embedding_dim, "actual": int(base.size)},
            )

        a_out = kernels.matvec(adapter.matrix_a, base, adapter.rank, adapter.embedding_dim)
        b_out = kernels.matvec(adapter.matrix_b, a_out, adapter.embedding_dim, adapter.rank)
        output = kernels.add(base, kernels.scale(b_out, adapter.lora_scale))

        if track_latency:
            elapsed_ms = (time.perf_counter() - start) * 1000
            self.latency_tracker.record(
                adapter.user_id,
                elapsed_ms,
                baseline=adapter.metadata.performance.avg_inference_ms,
            )
        return output

    def forward_batch(
        self,
        base_embeddings: Iterable[Sequence[float] | np.ndarray],
        adapter: UserLoRAAdapter,
    ) -> List[np.ndarray]:
        return [self.forward(embedding, adapter) for embedding in base_embeddings]

    def tracked_latency_ms(self, adapter: UserLoRAAdapter) -> float:
        tracked = self.latency_tracker.average_ms(adapter.user_id)
        if tracked is None:
            return adapter.metadata.performance.avg_inference_ms
        return tracked
