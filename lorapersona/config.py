from __future__ import annotations

import os
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field

from lorapersona.logging import get_logger

logger = get_logger(__name__)


class LoRAConfig(BaseModel):
    """Engine-wide LoRA hyperparameters, fixed at engine construction.

    Shared read-only by every adapter the engine processes.
    """

    model_config = ConfigDict(frozen=True)

    rank: int = Field(4, gt=0)
    embedding_dim: int = Field(64, gt=0)
    scaling_factor: float = 1.0
    learning_rate: float = Field(0.001, gt=0)
    use_ewc: bool = True
    ewc_lambda: float = Field(0.5, ge=0)
    gradient_clip_threshold: float = Field(1.0, gt=0)
    # Seed for adapter initialization; None draws fresh entropy
    seed: int | None = None
    reasoning_bank_cache: bool = True


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings read from the environment and an optional .env file."""

    lora_rank: int = env_field(4, "LORA_RANK", description="Inner dimension of every adapter")
    lora_embedding_dim: int = env_field(
        64, "LORA_EMBEDDING_DIM", description="Dimension of the base content embeddings"
    )
    lora_scaling_factor: float = env_field(1.0, "LORA_SCALING_FACTOR")
    lora_learning_rate: float = env_field(0.001, "LORA_LEARNING_RATE")
    lora_use_ewc: bool = env_field(
        True,
        "LORA_USE_EWC",
        description="Enable EWC++ regularization and Fisher tracking",
    )
    lora_ewc_lambda: float = env_field(0.5, "LORA_EWC_LAMBDA")
    lora_gradient_clip_threshold: float = env_field(1.0, "LORA_GRADIENT_CLIP_THRESHOLD")
    lora_seed: int | None = env_field(
        None,
        "LORA_SEED",
        description="Seed adapter initialization for reproducible onboarding",
    )
    reasoning_bank_cache: bool = env_field(
        True,
        "REASONING_BANK_CACHE",
        description="Cache learning-rate hints per task",
    )

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    def lora_config(self) -> LoRAConfig:
        config = LoRAConfig(
            rank=self.lora_rank,
            embedding_dim=self.lora_embedding_dim,
            scaling_factor=self.lora_scaling_factor,
            learning_rate=self.lora_learning_rate,
            use_ewc=self.lora_use_ewc,
            ewc_lambda=self.lora_ewc_lambda,
            gradient_clip_threshold=self.lora_gradient_clip_threshold,
            seed=self.lora_seed,
            reasoning_bank_cache=self.reasoning_bank_cache,
        )
        logger.debug("lora_config_loaded", **config.model_dump())
        return config


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
