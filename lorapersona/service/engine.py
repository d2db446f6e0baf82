from __future__ import annotations

from typing import Iterable, List, Optional, Sequence

import numpy as np

from lorapersona.config import LoRAConfig, Settings, get_settings
from lorapersona.logging import get_logger
from lorapersona.service.forward import ForwardEngine
from lorapersona.service.lifecycle import AdapterLifecycle
from lorapersona.service.reasoning_bank import ReasoningBank, ReasoningBankClient
from lorapersona.service.training import AdapterTrainingService
from lorapersona.storage.models import AdapterFeedback, UserLoRAAdapter

logger = get_logger(__name__)


class LoRAPersonalizationEngine:
    """Facade over the forward, training and lifecycle components.

    The engine holds configuration and observability state only; adapters
    are owned by the caller and passed in on every call.
    """

    def __init__(
        self,
        config: Optional[LoRAConfig] = None,
        *,
        reasoning_bank: Optional[ReasoningBank] = None,
        rng: Optional[np.random.Generator] = None,
    ) -> None:
        self.config = config or LoRAConfig()
        self.reasoning_bank = ReasoningBankClient(
            reasoning_bank, cache_enabled=self.config.reasoning_bank_cache
        )
        self.forward_engine = ForwardEngine()
        self.training = AdapterTrainingService(
            self.config, self.forward_engine, reasoning_bank=self.reasoning_bank
        )
        self.lifecycle = AdapterLifecycle(self.config, rng=rng)

    def create_adapter(
        self,
        user_id: str,
        preference_vector: Optional[Sequence[float] | np.ndarray] = None,
    ) -> UserLoRAAdapter:
        return self.lifecycle.create(user_id, preference_vector)

    def forward(
        self, base_embedding: Sequence[float] | np.ndarray, adapter: UserLoRAAdapter
    ) -> np.ndarray:
        return self.forward_engine.forward(base_embedding, adapter)

    def forward_batch(
        self,
        base_embeddings: Iterable[Sequence[float] | np.ndarray],
        adapter: UserLoRAAdapter,
    ) -> List[np.ndarray]:
        return self.forward_engine.forward_batch(base_embeddings, adapter)

    def update_adapter(
        self, adapter: UserLoRAAdapter, feedback: Sequence[AdapterFeedback]
    ) -> UserLoRAAdapter:
        return self.training.update(adapter, feedback)

    def serialize_adapter(self, adapter: UserLoRAAdapter) -> bytes:
        return self.lifecycle.serialize(adapter)

    def deserialize_adapter(self, data: bytes) -> UserLoRAAdapter:
        return self.lifecycle.deserialize(data)

    def merge_adapters(
        self,
        adapters: Sequence[UserLoRAAdapter],
        weights: Optional[Sequence[float]] = None,
    ) -> UserLoRAAdapter:
        return self.lifecycle.merge(adapters, weights)

    def forget_user(self, user_id: str) -> None:
        """Drop per-user runtime state once the caller discards that user's adapter."""
        self.forward_engine.latency_tracker.forget(user_id)

    def get_config(self) -> dict:
        config = self.config.model_dump()
        config["reasoning_bank"] = self.reasoning_bank.connected
        return config

    # Optional reasoning bank collaborator

    def connect_reasoning_bank(self, bank: ReasoningBank) -> None:
        self.reasoning_bank.connect(bank)
        logger.info("reasoning_bank_connected", session_id=self.reasoning_bank.session_id)

    def disconnect_reasoning_bank(self) -> None:
        self.reasoning_bank.disconnect()
        logger.info("reasoning_bank_disconnected", session_id=self.reasoning_bank.session_id)

    def has_reasoning_bank(self) -> bool:
        return self.reasoning_bank.connected

    def reasoning_bank_stats(self) -> dict:
        return self.reasoning_bank.stats()

    def clear_reasoning_bank_cache(self) -> None:
        self.reasoning_bank.clear_cache()

    def consolidate_adaptation_patterns(
        self,
        min_success_rate: float = 0.8,
        min_uses: int = 3,
        lookback_days: int = 30,
    ) -> Optional[dict]:
        return self.reasoning_bank.consolidate(
            min_success_rate=min_success_rate,
            min_uses=min_uses,
            lookback_days=lookback_days,
        )

    def similar_adaptations(self, user_id: str, k: int = 5) -> Optional[List[dict]]:
        return self.reasoning_bank.similar_adaptations(user_id, k)


def create_engine(
    settings: Optional[Settings] = None,
    *,
    reasoning_bank: Optional[ReasoningBank] = None,
) -> LoRAPersonalizationEngine:
    settings = settings or get_settings()
    return LoRAPersonalizationEngine(settings.lora_config(), reasoning_bank=reasoning_bank)
