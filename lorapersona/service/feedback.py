"""Helpers for the preference orchestrator that turns watch events into feedback.

The reward formula lives here, outside the training path, so the trainer only
ever sees a reward in [0, 1] and stays reusable for other signals.
"""

from __future__ import annotations

from typing import Optional, Sequence

import numpy as np

from lorapersona.storage.models import AdapterFeedback, WatchEvent, utc_now

COMPLETION_WEIGHT = 0.5
RATING_WEIGHT = 0.3
REWATCH_BONUS = 0.2
MAX_RATING = 5.0


def watch_reward(event: WatchEvent) -> float:
    """min(1, 0.5 * completion + 0.3 * rating / 5 + 0.2 * rewatch)."""
    completion = COMPLETION_WEIGHT * event.completion_rate
    rating = RATING_WEIGHT * (event.rating / MAX_RATING) if event.rating else 0.0
    rewatch = REWATCH_BONUS if event.is_rewatch else 0.0
    return min(1.0, completion + rating + rewatch)


def create_adapter_feedback(
    watch_event: WatchEvent,
    content_embedding: Sequence[float] | np.ndarray,
    target_embedding: Optional[Sequence[float] | np.ndarray] = None,
) -> AdapterFeedback:
    return AdapterFeedback(
        content_embedding=content_embedding,
        target_embedding=target_embedding,
        reward=watch_reward(watch_event),
        watch_event=watch_event,
        timestamp=utc_now(),
    )
