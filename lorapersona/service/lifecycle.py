from __future__ import annotations

import math
from typing import Optional, Sequence

import numpy as np

from lorapersona.config import LoRAConfig
from lorapersona.logging import get_logger
from lorapersona.service import kernels
from lorapersona.service.errors import (
    DimensionMismatchError,
    EmptyInputError,
    InvalidWeightsError,
)
from lorapersona.storage.codec import decode_adapter, encode_adapter, estimate_size_bytes
from lorapersona.storage.models import (
    MERGED_USER_ID,
    AdapterMetadata,
    AdapterPerformance,
    UserLoRAAdapter,
    utc_now,
)

logger = get_logger(__name__)

# Strength of the cold-start nudge a preference vector applies to matrix B
PREFERENCE_SEED_SCALE = 0.01


def glorot_limit(embedding_dim: int, rank: int) -> float:
    return math.sqrt(6.0 / (embedding_dim + rank))


class AdapterLifecycle:
    """Creates, serializes, deserializes and merges adapters."""

    def __init__(self, config: LoRAConfig, *, rng: Optional[np.random.Generator] = None) -> None:
        self.config = config
        self.rng = rng or np.random.default_rng(config.seed)

    def create(
        self,
        user_id: str,
        preference_vector: Optional[Sequence[float] | np.ndarray] = None,
    ) -> UserLoRAAdapter:
        """New adapter whose contribution is zero until trained.

        matrix_a gets a Glorot-uniform draw and matrix_b starts at zero. A
        preference vector, when given, adds a small random perturbation to
        the rows of matrix_b it covers to bias cold-start personalization.

        No Fisher information is attached rather than a zero vector, so the
        first update stores its fresh Fisher estimate instead of 0.1 times it.
        """
        rank = self.config.rank
        dim = self.config.embedding_dim
        limit = glorot_limit(dim, rank)

        matrix_a = self.rng.uniform(-limit, limit, size=rank * dim).astype(kernels.DTYPE)
        matrix_b = np.zeros(dim * rank, dtype=kernels.DTYPE)
        if preference_vector is not None:
            preference = kernels.as_vector(preference_vector)
            rows = min(dim, preference.size)
            noise = self.rng.uniform(-1.0, 1.0, size=(rows, rank))
            bias = preference[:rows, None].astype(np.float64) * PREFERENCE_SEED_SCALE * noise * limit
            matrix_b = matrix_b.reshape(dim, rank)
            matrix_b[:rows] += bias.astype(kernels.DTYPE)
            matrix_b = matrix_b.reshape(-1)

        now = utc_now()
        adapter = UserLoRAAdapter(
            user_id=user_id,
            rank=rank,
            matrix_a=matrix_a,
            matrix_b=matrix_b,
            scaling_factor=float(kernels.DTYPE(self.config.scaling_factor)),
            embedding_dim=dim,
            version=1,
            created_at=now,
            updated_at=now,
            metadata=AdapterMetadata(
                total_samples=0,
                avg_loss=0.0,
                learning_rate=self.config.learning_rate,
                last_trained_at=now,
                performance=AdapterPerformance(
                    avg_inference_ms=0.0,
                    size_bytes=estimate_size_bytes(rank, dim),
                ),
            ),
            fisher_information=None,
        )
        logger.info(
            "adapter_created",
            user_id=user_id,
            rank=rank,
            embedding_dim=dim,
            seeded=preference_vector is not None,
        )
        return adapter

    def serialize(self, adapter: UserLoRAAdapter) -> bytes:
        return encode_adapter(adapter)

    def deserialize(self, data: bytes) -> UserLoRAAdapter:
        return decode_adapter(data)

    def merge(
        self,
        adapters: Sequence[UserLoRAAdapter],
        weights: Optional[Sequence[float]] = None,
    ) -> UserLoRAAdapter:
        """Weighted average of adapters sharing rank and embedding_dim.

        Weights default to uniform and are normalized to sum to 1. The result
        belongs to no user, restarts at version 1 and carries no Fisher
        information.

        Raises:
            EmptyInputError: no adapters given.
            DimensionMismatchError: shapes differ, or weights and adapters
                differ in count.
            InvalidWeightsError: weights do not sum to a positive number.
        """
        if not adapters:
            raise EmptyInputError("At least one adapter required for merging")
        first = adapters[0]
        rank, dim = first.rank, first.embedding_dim
        for adapter in adapters:
            if adapter.rank != rank or adapter.embedding_dim != dim:
                raise DimensionMismatchError(
                    "All adapters must have same dimensions for merging",
                    detail={
                        "expected": {"rank": rank, "embedding_dim": dim},
                        "actual": {"rank": adapter.rank, "embedding_dim": adapter.embedding_dim},
                        "user_id": adapter.user_id,
                    },
                )

        if weights is None:
            weights = [1.0] * len(adapters)
        if len(weights) != len(adapters):
            raise DimensionMismatchError(
                "merge weights must match adapters one to one",
                detail={"adapters": len(adapters), "weights": len(weights)},
            )
        total_weight = float(sum(weights))
        if not math.isfinite(total_weight) or total_weight <= 0:
            raise InvalidWeightsError(
                "merge weights must sum to a positive number",
                detail={"weights": [float(w) for w in weights]},
            )
        normalized = [float(w) / total_weight for w in weights]

        merged_a = np.zeros(first.matrix_a.size, dtype=np.float64)
        merged_b = np.zeros(first.matrix_b.size, dtype=np.float64)
        for adapter, weight in zip(adapters, normalized):
            merged_a += adapter.matrix_a.astype(np.float64) * weight
            merged_b += adapter.matrix_b.astype(np.float64) * weight

        now = utc_now()
        merged = UserLoRAAdapter(
            user_id=MERGED_USER_ID,
            rank=rank,
            matrix_a=merged_a.astype(kernels.DTYPE),
            matrix_b=merged_b.astype(kernels.DTYPE),
            scaling_factor=first.scaling_factor,
            embedding_dim=dim,
            version=1,
            created_at=now,
            updated_at=now,
            metadata=AdapterMetadata(
                total_samples=sum(a.metadata.total_samples for a in adapters),
                avg_loss=sum(a.metadata.avg_loss for a in adapters) / len(adapters),
                learning_rate=self.config.learning_rate,
                last_trained_at=now,
                performance=AdapterPerformance(
                    avg_inference_ms=0.0,
                    size_bytes=estimate_size_bytes(rank, dim),
                ),
            ),
            fisher_information=None,
        )
        logger.info(
            "adapters_merged",
            sources=[a.user_id for a in adapters],
            weights=normalized,
            rank=rank,
            embedding_dim=dim,
        )
        return merged
