from __future__ import annotations

import time
from typing import List, Optional, Sequence

import numpy as np

from lorapersona.config import LoRAConfig
from lorapersona.logging import get_logger, log_training_trace
from lorapersona.service import kernels
from lorapersona.service.errors import DimensionMismatchError
from lorapersona.service.forward import ForwardEngine
from lorapersona.service.reasoning_bank import ReasoningBankClient
from lorapersona.storage.models import (
    AdapterFeedback,
    AdapterMetadata,
    AdapterPerformance,
    UserLoRAAdapter,
    utc_now,
)

logger = get_logger(__name__)

# Weight kept by the previous value in the loss and Fisher moving averages
LOSS_EMA_DECAY = 0.9
FISHER_EMA_DECAY = 0.9


class AdapterTrainingService:
    """Online SGD for per-user LoRA adapters with EWC++ regularization."""

    def __init__(
        self,
        config: LoRAConfig,
        forward_engine: ForwardEngine,
        *,
        reasoning_bank: Optional[ReasoningBankClient] = None,
    ) -> None:
        self.config = config
        self.forward_engine = forward_engine
        self.reasoning_bank = reasoning_bank or ReasoningBankClient(
            cache_enabled=config.reasoning_bank_cache
        )

    def update(
        self, adapter: UserLoRAAdapter, feedback: Sequence[AdapterFeedback]
    ) -> UserLoRAAdapter:
        """Train on a feedback batch and return the next adapter version.

        An empty batch returns the input adapter untouched. The input adapter
        is never modified.

        Raises:
            DimensionMismatchError: a feedback embedding does not match the
                adapter's embedding_dim.
        """
        if not feedback:
            return adapter

        start = time.perf_counter()
        grad_a, grad_b, total_loss, trace = self._accumulate_gradients(adapter, feedback)
        batch_size = len(feedback)
        grad_a /= batch_size
        grad_b /= batch_size
        batch_loss = total_loss / batch_size

        penalized_a, penalized_b = self._apply_ewc_penalty(adapter, grad_a, grad_b)
        clipped_a = kernels.clip_by_norm(penalized_a, self.config.gradient_clip_threshold)
        clipped_b = kernels.clip_by_norm(penalized_b, self.config.gradient_clip_threshold)

        learning_rate = self._learning_rate(adapter)
        new_matrix_a = kernels.sub(adapter.matrix_a, kernels.scale(clipped_a, learning_rate))
        new_matrix_b = kernels.sub(adapter.matrix_b, kernels.scale(clipped_b, learning_rate))
        fisher = self._next_fisher(adapter, grad_a, grad_b)

        now = utc_now()
        previous = adapter.metadata
        metadata = AdapterMetadata(
            total_samples=previous.total_samples + batch_size,
            avg_loss=LOSS_EMA_DECAY * previous.avg_loss + (1 - LOSS_EMA_DECAY) * batch_loss,
            learning_rate=learning_rate,
            last_trained_at=now,
            performance=AdapterPerformance(
                avg_inference_ms=self.forward_engine.tracked_latency_ms(adapter),
                size_bytes=previous.performance.size_bytes,
            ),
        )
        updated = adapter.with_changes(
            matrix_a=new_matrix_a,
            matrix_b=new_matrix_b,
            version=adapter.version + 1,
            updated_at=now,
            fisher_information=fisher,
            metadata=metadata,
        )

        elapsed_ms = (time.perf_counter() - start) * 1000
        log_training_trace(trace, logger=logger)
        logger.info(
            "adapter_updated",
            user_id=adapter.user_id,
            version=updated.version,
            batch_size=batch_size,
            batch_loss=batch_loss,
            avg_loss=metadata.avg_loss,
            learning_rate=learning_rate,
            ewc=fisher is not None,
            duration_ms=round(elapsed_ms, 3),
        )
        self.reasoning_bank.record_episode(
            user_id=adapter.user_id,
            rank=adapter.rank,
            samples=batch_size,
            learning_rate=learning_rate,
            batch_loss=batch_loss,
            previous_loss=previous.avg_loss,
            first_training=previous.total_samples == 0,
            reward=sum(item.reward for item in feedback) / batch_size,
            version=updated.version,
            latency_ms=elapsed_ms,
        )
        return updated

    def _accumulate_gradients(
        self, adapter: UserLoRAAdapter, feedback: Sequence[AdapterFeedback]
    ) -> tuple[np.ndarray, np.ndarray, float, List[dict]]:
        rank = adapter.rank
        dim = adapter.embedding_dim
        grad_a = np.zeros(adapter.matrix_a.size, dtype=kernels.DTYPE)
        grad_b = np.zeros(adapter.matrix_b.size, dtype=kernels.DTYPE)
        inverse_scale = 1.0 / adapter.lora_scale
        total_loss = 0.0
        trace: List[dict] = []

        for index, item in enumerate(feedback):
            content = item.content_embedding
            current = self.forward_engine.forward(content, adapter, track_latency=False)
            if item.target_embedding is not None:
                target = item.target_embedding
                if target.size != dim:
                    raise DimensionMismatchError(
                        f"Target dimension mismatch: expected {dim}, got {target.size}",
                        detail={"expected": dim, "actual": int(target.size), "index": index},
                    )
            else:
                target = kernels.scale(content, item.reward)

            error = kernels.sub(current, target)
            loss = kernels.mean_squared(error)
            total_loss += loss
            trace.append({"index": index, "loss": loss, "reward": item.reward})

            scaled_error = kernels.scale(error, inverse_scale)
            a_out = kernels.matvec(adapter.matrix_a, content, rank, dim)
            grad_b += kernels.outer(scaled_error, a_out)
            b_trans_error = kernels.matvec_transposed(adapter.matrix_b, scaled_error, dim, rank)
            grad_a += kernels.outer(b_trans_error, content)

        return grad_a, grad_b, total_loss, trace

    def _apply_ewc_penalty(
        self, adapter: UserLoRAAdapter, grad_a: np.ndarray, grad_b: np.ndarray
    ) -> tuple[np.ndarray, np.ndarray]:
        """Pull gradients toward the current weights in proportion to their Fisher importance."""
        if not self.config.use_ewc or adapter.fisher_information is None:
            return grad_a, grad_b
        fisher = adapter.fisher_information
        split = grad_a.size
        lam = self.config.ewc_lambda
        penalized_a = kernels.add(grad_a, kernels.scale(fisher[:split] * adapter.matrix_a, lam))
        penalized_b = kernels.add(grad_b, kernels.scale(fisher[split:] * adapter.matrix_b, lam))
        return penalized_a, penalized_b

    def _next_fisher(
        self, adapter: UserLoRAAdapter, grad_a: np.ndarray, grad_b: np.ndarray
    ) -> Optional[np.ndarray]:
        if not self.config.use_ewc:
            return None
        fresh = np.concatenate([grad_a * grad_a, grad_b * grad_b]).astype(kernels.DTYPE)
        if adapter.fisher_information is None:
            return fresh
        blended = FISHER_EMA_DECAY * adapter.fisher_information.astype(np.float64) + (
            1 - FISHER_EMA_DECAY
        ) * fresh.astype(np.float64)
        return blended.astype(kernels.DTYPE)

    def _learning_rate(self, adapter: UserLoRAAdapter) -> float:
        base = self.config.learning_rate
        hint = self.reasoning_bank.learning_rate_hint(adapter.user_id, adapter.rank, base)
        return hint if hint is not None else base
