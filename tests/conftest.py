import os
import sys
from pathlib import Path

# Configure the environment before any lorapersona import reads it
os.environ.setdefault("LOG_LEVEL", "WARNING")
os.environ.setdefault("LOG_JSON", "true")
os.environ.setdefault("LORA_SEED", "1234")

import numpy as np  # noqa: E402
import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from lorapersona.config import LoRAConfig, reset_settings_cache  # noqa: E402
from lorapersona.logging import correlation_id_var  # noqa: E402
from lorapersona.service.engine import LoRAPersonalizationEngine  # noqa: E402
from lorapersona.storage.models import WatchEvent  # noqa: E402


@pytest.fixture(autouse=True)
def reset_settings_state():
    reset_settings_cache()
    correlation_id_var.set(None)
    yield
    correlation_id_var.set(None)
    reset_settings_cache()


@pytest.fixture
def config():
    return LoRAConfig(rank=4, embedding_dim=64, seed=7)


@pytest.fixture
def engine(config):
    return LoRAPersonalizationEngine(config)


@pytest.fixture
def rng():
    return np.random.default_rng(2024)


@pytest.fixture
def watch_event():
    return WatchEvent(
        user_id="u1",
        content_id=123,
        completion_rate=0.8,
        rating=4,
        is_rewatch=False,
        duration_seconds=2880,
        total_duration_seconds=3600,
        media_type="movie",
        platform_id="web",
    )
