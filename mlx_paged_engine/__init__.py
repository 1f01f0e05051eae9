"""Paged-KV continuous batching engine with speculative decoding for MLX."""

from mlx_paged_engine.config import ConfigError, EngineConfig, MemoryConfig, SchedulerConfig
from mlx_paged_engine.engine import CancellationToken, Engine
from mlx_paged_engine.types import (
    FinishReason,
    GenerationRequest,
    InvalidRequestError,
    RequestFinished,
    RequestKind,
    SamplingParams,
    TokenDelta,
)

__all__ = [
    "CancellationToken",
    "ConfigError",
    "Engine",
    "EngineConfig",
    "FinishReason",
    "GenerationRequest",
    "InvalidRequestError",
    "MemoryConfig",
    "RequestFinished",
    "RequestKind",
    "SamplingParams",
    "SchedulerConfig",
    "TokenDelta",
]
