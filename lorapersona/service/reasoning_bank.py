from __future__ import annotations

import json
import re
import threading
import uuid
from typing import Any, Dict, List, Optional, Protocol

from lorapersona.logging import get_logger

logger = get_logger(__name__)

TASK_PREFIX = "lora_adaptation_user"

_LEARNING_RATE_HINT = re.compile(r"learning rate to\s+([0-9]*\.?[0-9]+(?:[eE][-+]?[0-9]+)?)", re.IGNORECASE)


def adaptation_task(user_id: str, rank: int, samples: Optional[int] = None) -> str:
    task = f"{TASK_PREFIX}_{user_id}_rank_{rank}"
    if samples is not None:
        task = f"{task}_samples_{samples}"
    return task


class ReasoningBank(Protocol):
    """External pattern store consulted for tuning hints.

    Implementations are optional collaborators; the engine's numeric output
    only ever depends on them through the learning rate they suggest.
    """

    def store_pattern(self, pattern: dict) -> Any: ...

    def retrieve_patterns(
        self,
        query: str,
        *,
        k: int = 5,
        only_successes: bool = False,
        min_reward: Optional[float] = None,
    ) -> List[dict]: ...

    def learn_strategy(self, task: str) -> dict: ...

    def auto_consolidate(
        self,
        min_uses: int = 3,
        min_success_rate: float = 0.8,
        lookback_days: int = 30,
    ) -> dict: ...


class NullReasoningBank:
    """No-op ReasoningBank used when no collaborator is connected."""

    def store_pattern(self, pattern: dict) -> Any:
        return None

    def retrieve_patterns(
        self,
        query: str,
        *,
        k: int = 5,
        only_successes: bool = False,
        min_reward: Optional[float] = None,
    ) -> List[dict]:
        return []

    def learn_strategy(self, task: str) -> dict:
        return {}

    def auto_consolidate(
        self,
        min_uses: int = 3,
        min_success_rate: float = 0.8,
        lookback_days: int = 30,
    ) -> dict:
        return {"skills_created": 0}


def parse_learning_rate_hint(recommendation: Optional[str]) -> Optional[float]:
    """Extract the rate from text such as 'Reduce learning rate to 0.0005'."""
    if not isinstance(recommendation, str) or not recommendation:
        return None
    match = _LEARNING_RATE_HINT.search(recommendation)
    if not match:
        return None
    value = float(match.group(1))
    return value if value > 0 else None


class ReasoningBankClient:
    """Fire-and-forget wrapper around an optional ReasoningBank.

    Every call into the collaborator is guarded: failures are logged and
    turned into "no hint", never raised into the training path.
    """

    def __init__(self, bank: Optional[ReasoningBank] = None, *, cache_enabled: bool = True) -> None:
        self.bank: ReasoningBank = bank if bank is not None else NullReasoningBank()
        self.connected = bank is not None
        self.cache_enabled = cache_enabled
        self.session_id = f"lora-{uuid.uuid4().hex[:12]}"
        self._hint_cache: Dict[str, Optional[float]] = {}
        self._lock = threading.Lock()

    def connect(self, bank: ReasoningBank) -> None:
        self.bank = bank
        self.connected = True
        self.clear_cache()

    def disconnect(self) -> None:
        self.bank = NullReasoningBank()
        self.connected = False
        self.clear_cache()

    def clear_cache(self) -> None:
        with self._lock:
            self._hint_cache.clear()

    def stats(self) -> dict:
        with self._lock:
            cache_size = len(self._hint_cache)
        return {
            "enabled": self.connected,
            "session_id": self.session_id,
            "cache_enabled": self.cache_enabled,
            "cache_size": cache_size,
        }

    def learning_rate_hint(self, user_id: str, rank: int, base_rate: float) -> Optional[float]:
        """Suggested learning rate for this user, clamped to [base/10, base*10].

        A strategy that is not a dict, or whose recommendation is not text,
        counts as no hint.
        """
        if not self.connected:
            return None
        task = adaptation_task(user_id, rank)
        if self.cache_enabled:
            with self._lock:
                if task in self._hint_cache:
                    return self._hint_cache[task]
        try:
            strategy = self.bank.learn_strategy(task) or {}
            if not isinstance(strategy, dict):
                raise TypeError(f"strategy must be a dict, got {type(strategy).__name__}")
            hint = parse_learning_rate_hint(strategy.get("recommendation"))
            if hint is not None:
                hint = min(max(hint, base_rate / 10), base_rate * 10)
        except Exception as exc:
            logger.warning("reasoning_bank_strategy_failed", task=task, error=str(exc))
            return None
        if hint is not None:
            logger.info(
                "reasoning_bank_learning_rate_hint",
                task=task,
                base_rate=base_rate,
                adjusted_rate=hint,
                confidence=strategy.get("confidence"),
            )
        if self.cache_enabled:
            with self._lock:
                self._hint_cache[task] = hint
        return hint

    def record_episode(
        self,
        *,
        user_id: str,
        rank: int,
        samples: int,
        learning_rate: float,
        batch_loss: float,
        previous_loss: float,
        first_training: bool,
        reward: float,
        version: int,
        latency_ms: float,
    ) -> None:
        if not self.connected:
            return
        pattern = {
            "session_id": self.session_id,
            "task": adaptation_task(user_id, rank, samples),
            "input": json.dumps(
                {"userId": user_id, "rank": rank, "learningRate": learning_rate, "samples": samples}
            ),
            "output": json.dumps({"avgLoss": batch_loss, "version": version}),
            "success": first_training or batch_loss <= previous_loss,
            "reward": min(1.0, max(0.0, reward)),
            "latency_ms": latency_ms,
        }
        try:
            self.bank.store_pattern(pattern)
        except Exception as exc:
            logger.warning("reasoning_bank_store_failed", task=pattern["task"], error=str(exc))

    def consolidate(
        self,
        *,
        min_success_rate: float = 0.8,
        min_uses: int = 3,
        lookback_days: int = 30,
    ) -> Optional[dict]:
        if not self.connected:
            return None
        try:
            return self.bank.auto_consolidate(min_uses, min_success_rate, lookback_days)
        except Exception as exc:
            logger.warning("reasoning_bank_consolidate_failed", error=str(exc))
            return None

    def similar_adaptations(self, user_id: str, k: int = 5) -> Optional[List[dict]]:
        """Successful past adaptations for a user, parsed from their recorded input."""
        if not self.connected:
            return None
        query = f"{TASK_PREFIX}_{user_id}"
        try:
            patterns = self.bank.retrieve_patterns(query, k=k, only_successes=True)
        except Exception as exc:
            logger.warning("reasoning_bank_retrieve_failed", query=query, error=str(exc))
            return None
        results: List[dict] = []
        if not isinstance(patterns, (list, tuple)):
            return results
        for pattern in patterns:
            if not isinstance(pattern, dict):
                continue
            try:
                recorded = json.loads(pattern.get("input") or "{}")
                outcome = json.loads(pattern.get("output") or "{}")
            except (TypeError, ValueError):
                continue
            if not isinstance(recorded, dict) or not isinstance(outcome, dict):
                continue
            results.append(
                {
                    "user_id": recorded.get("userId"),
                    "rank": recorded.get("rank"),
                    "learning_rate": recorded.get("learningRate"),
                    "avg_loss": outcome.get("avgLoss"),
                    "reward": pattern.get("reward"),
                }
            )
        return results
