from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Sequence

import numpy as np

from lorapersona.service.errors import DimensionMismatchError

# userId given to adapters produced by merging several users
MERGED_USER_ID = "merged"


def utc_now() -> datetime:
    """Current UTC time truncated to the millisecond resolution of the wire format."""
    now = datetime.now(timezone.utc)
    return now.replace(microsecond=(now.microsecond // 1000) * 1000)


def format_timestamp(value: datetime) -> str:
    """ISO-8601 UTC with milliseconds and a Z suffix, e.g. 2024-05-01T12:00:00.250Z."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    value = value.astimezone(timezone.utc)
    return value.strftime("%Y-%m-%dT%H:%M:%S.") + f"{value.microsecond // 1000:03d}Z"


def parse_timestamp(value: str) -> datetime:
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def frozen_vector(values: Sequence[float] | np.ndarray) -> np.ndarray:
    """Copy values into a read-only contiguous float32 vector.

    Always copies, so a caller holding the source array cannot reach the
    adapter's storage.
    """
    arr = np.array(np.asarray(values, dtype=np.float32).reshape(-1))
    arr.setflags(write=False)
    return arr


@dataclass(frozen=True)
class AdapterPerformance:
    avg_inference_ms: float = 0.0
    size_bytes: int = 0


@dataclass(frozen=True)
class AdapterMetadata:
    total_samples: int
    avg_loss: float
    learning_rate: float
    last_trained_at: datetime
    performance: AdapterPerformance = field(default_factory=AdapterPerformance)

    def to_dict(self) -> Dict[str, Any]:
        """camelCase shape embedded in the serialized adapter JSON blob."""
        return {
            "totalSamples": self.total_samples,
            "avgLoss": self.avg_loss,
            "learningRate": self.learning_rate,
            "lastTrainedAt": format_timestamp(self.last_trained_at),
            "performance": {
                "avgInferenceMs": self.performance.avg_inference_ms,
                "sizeBytes": self.performance.size_bytes,
            },
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AdapterMetadata":
        performance = data.get("performance") or {}
        return cls(
            total_samples=int(data["totalSamples"]),
            avg_loss=float(data["avgLoss"]),
            learning_rate=float(data["learningRate"]),
            last_trained_at=parse_timestamp(data["lastTrainedAt"]),
            performance=AdapterPerformance(
                avg_inference_ms=float(performance.get("avgInferenceMs", 0.0)),
                size_bytes=int(performance.get("sizeBytes", 0)),
            ),
        )


@dataclass(frozen=True, eq=False)
class UserLoRAAdapter:
    """One user's LoRA adapter: output = x + (scaling_factor / rank) * B @ A @ x.

    matrix_a is rank x embedding_dim and matrix_b is embedding_dim x rank,
    both flattened row-major. Instances are immutable; training returns a new
    instance with a bumped version, so concurrent readers can keep using the
    snapshot they hold.
    """

    user_id: str
    rank: int
    matrix_a: np.ndarray
    matrix_b: np.ndarray
    scaling_factor: float
    embedding_dim: int
    version: int
    created_at: datetime
    updated_at: datetime
    metadata: AdapterMetadata
    fisher_information: Optional[np.ndarray] = None

    def __post_init__(self) -> None:
        if self.rank <= 0 or self.embedding_dim <= 0:
            raise DimensionMismatchError(
                "rank and embedding_dim must be positive",
                detail={"rank": self.rank, "embedding_dim": self.embedding_dim},
            )
        expected = self.rank * self.embedding_dim
        matrix_a = frozen_vector(self.matrix_a)
        matrix_b = frozen_vector(self.matrix_b)
        if matrix_a.size != expected or matrix_b.size != expected:
            raise DimensionMismatchError(
                "adapter matrices do not match rank x embedding_dim",
                detail={
                    "expected": expected,
                    "matrix_a": int(matrix_a.size),
                    "matrix_b": int(matrix_b.size),
                },
            )
        object.__setattr__(self, "matrix_a", matrix_a)
        object.__setattr__(self, "matrix_b", matrix_b)
        if self.fisher_information is not None:
            fisher = frozen_vector(self.fisher_information)
            if fisher.size != 2 * expected:
                raise DimensionMismatchError(
                    "fisher information must cover both matrices",
                    detail={"expected": 2 * expected, "actual": int(fisher.size)},
                )
            object.__setattr__(self, "fisher_information", fisher)

    @property
    def has_fisher(self) -> bool:
        return self.fisher_information is not None

    @property
    def lora_scale(self) -> float:
        return self.scaling_factor / self.rank

    @property
    def parameter_count(self) -> int:
        return int(self.matrix_a.size + self.matrix_b.size)

    def with_changes(self, **changes: Any) -> "UserLoRAAdapter":
        """Functional update: a new adapter with the given fields replaced."""
        return dataclasses.replace(self, **changes)


@dataclass(frozen=True)
class WatchEvent:
    user_id: str
    content_id: int
    completion_rate: float
    is_rewatch: bool = False
    rating: Optional[float] = None
    duration_seconds: Optional[float] = None
    total_duration_seconds: Optional[float] = None
    media_type: Optional[str] = None
    platform_id: Optional[str] = None
    timestamp: datetime = field(default_factory=utc_now)


@dataclass(frozen=True, eq=False)
class AdapterFeedback:
    """One training example built from a watch event.

    When target_embedding is absent the implicit target is
    reward * content_embedding.
    """

    content_embedding: np.ndarray
    reward: float
    target_embedding: Optional[np.ndarray] = None
    watch_event: Optional[WatchEvent] = None
    timestamp: datetime = field(default_factory=utc_now)

    def __post_init__(self) -> None:
        object.__setattr__(self, "content_embedding", frozen_vector(self.content_embedding))
        if self.target_embedding is not None:
            object.__setattr__(self, "target_embedding", frozen_vector(self.target_embedding))
