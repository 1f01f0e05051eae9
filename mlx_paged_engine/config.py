"""Engine configuration for mlx-paged-engine."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Literal, Optional

from mlx_paged_engine.spec_decode.config import SpecDecodeConfig

logger = logging.getLogger(__name__)


class ConfigError(ValueError):
    """Raised when the scheduler or memory configuration is unusable."""


@dataclass
class SchedulerConfig:
    """Batching and admission policy.

    Attributes:
        batching_method: "continuous" reassembles the batch every step.
            "fixed" admits a new batch only once every running sequence
            has finished.
        max_num_seqs: Max sequences scheduled in one step.
        max_num_batched_tokens: Max tokens processed in one step. A prefill
            counts one per prompt token, a decode counts one (k+1 when
            speculating).
        eviction_policy: "swap" moves preempted sequences to the host tier
            when there is room, "recompute" always drops their cache.
        preemption_tiebreak: Among equal-priority victims, "latest_started"
            preempts the sequence that most recently entered Running,
            "latest_arrival" the one that arrived last.
        swap_min_tokens: Sequences shorter than this are recomputed even
            under the swap policy (re-prefill is cheaper than the copy).
        watermark_blocks: Device blocks kept free at admission so freshly
            admitted sequences are not preempted on their first decode.
        prefill_chunk_size: Max prompt tokens prefilled for one sequence in
            one step. 0 disables chunking.
        max_queue_size: Max pending requests in the intake queue.
        max_model_len: Hard cap on prompt + generated tokens.
    """

    batching_method: Literal["continuous", "fixed"] = "continuous"
    max_num_seqs: int = 8
    max_num_batched_tokens: int = 2048
    eviction_policy: Literal["swap", "recompute"] = "swap"
    preemption_tiebreak: Literal["latest_started", "latest_arrival"] = "latest_started"
    swap_min_tokens: int = 0
    watermark_blocks: int = 0
    prefill_chunk_size: int = 512
    max_queue_size: int = 128
    max_model_len: int = 4096

    def validate(self) -> None:
        if self.batching_method not in ("continuous", "fixed"):
            raise ConfigError(f"Unknown batching_method: {self.batching_method}")
        if self.eviction_policy not in ("swap", "recompute"):
            raise ConfigError(f"Unknown eviction_policy: {self.eviction_policy}")
        if self.preemption_tiebreak not in ("latest_started", "latest_arrival"):
            raise ConfigError(
                f"Unknown preemption_tiebreak: {self.preemption_tiebreak}"
            )
        if self.max_num_seqs < 1:
            raise ConfigError(f"max_num_seqs must be >= 1, got {self.max_num_seqs}")
        if self.max_num_batched_tokens < 1:
            raise ConfigError(
                f"max_num_batched_tokens must be >= 1, got {self.max_num_batched_tokens}"
            )
        if self.prefill_chunk_size < 0:
            raise ConfigError(
                f"prefill_chunk_size must be >= 0, got {self.prefill_chunk_size}"
            )
        if self.prefill_chunk_size == 0 and self.max_num_batched_tokens < self.max_model_len:
            # Without chunking a full-length prompt must fit in one step.
            raise ConfigError(
                "max_num_batched_tokens must be >= max_model_len when "
                "prefill chunking is disabled"
            )
        if self.watermark_blocks < 0 or self.swap_min_tokens < 0:
            raise ConfigError("watermark_blocks and swap_min_tokens must be >= 0")
        if self.max_queue_size < 1:
            raise ConfigError(f"max_queue_size must be >= 1, got {self.max_queue_size}")
        if self.max_model_len < 1:
            raise ConfigError(f"max_model_len must be >= 1, got {self.max_model_len}")


@dataclass
class MemoryConfig:
    """KV cache memory budget.

    The device budget is taken from, in order: ``num_device_blocks``,
    ``device_memory_bytes``, ``device_memory_fraction`` of
    ``total_device_memory`` (queried from mlx when None). The host tier is
    ``num_host_blocks`` or ``swap_space_bytes`` worth of blocks.
    """

    block_size: int = 16  # Tokens per KV block
    num_device_blocks: Optional[int] = None
    device_memory_bytes: Optional[int] = None
    device_memory_fraction: float = 0.5
    total_device_memory: Optional[int] = None
    num_host_blocks: Optional[int] = None
    swap_space_bytes: int = 1 << 30

    def validate(self) -> None:
        if self.block_size < 1:
            raise ConfigError(f"block_size must be >= 1, got {self.block_size}")
        if self.num_device_blocks is not None and self.num_device_blocks < 1:
            raise ConfigError(
                f"num_device_blocks must be >= 1, got {self.num_device_blocks}"
            )
        if self.num_host_blocks is not None and self.num_host_blocks < 0:
            raise ConfigError(f"num_host_blocks must be >= 0, got {self.num_host_blocks}")
        if not (0.0 < self.device_memory_fraction <= 1.0):
            raise ConfigError(
                "device_memory_fraction must be in (0, 1], "
                f"got {self.device_memory_fraction}"
            )
        if self.swap_space_bytes < 0:
            raise ConfigError(f"swap_space_bytes must be >= 0, got {self.swap_space_bytes}")

    def resolve(self, kv_bytes_per_token: int) -> tuple[int, int]:
        """Derive (num_device_blocks, num_host_blocks) from the KV footprint.

        Args:
            kv_bytes_per_token: Bytes of KV cache one token occupies across
                all layers (target + draft when speculating).

        Raises:
            ConfigError: If the budget does not hold a single block.
        """
        self.validate()
        if kv_bytes_per_token <= 0:
            raise ConfigError(
                f"kv_bytes_per_token must be positive, got {kv_bytes_per_token}"
            )
        block_bytes = kv_bytes_per_token * self.block_size

        if self.num_device_blocks is not None:
            num_device = self.num_device_blocks
        else:
            budget = self.device_memory_bytes
            if budget is None:
                total = self.total_device_memory
                if total is None:
                    total = _query_device_memory()
                budget = int(total * self.device_memory_fraction)
            num_device = budget // block_bytes

        if num_device < 1:
            raise ConfigError(
                f"Device budget holds no KV block ({block_bytes} bytes per block)"
            )

        if self.num_host_blocks is not None:
            num_host = self.num_host_blocks
        else:
            num_host = self.swap_space_bytes // block_bytes

        logger.info(
            "KV cache: %d device blocks, %d host blocks (%d tokens/block, %d bytes/block)",
            num_device, num_host, self.block_size, block_bytes,
        )
        return num_device, num_host


def _query_device_memory() -> int:
    """Total device memory reported by mlx."""
    import mlx.core as mx

    info_fn = getattr(mx, "device_info", None)
    if info_fn is None and mx.metal.is_available():
        info_fn = mx.metal.device_info
    if info_fn is None:
        raise ConfigError(
            "Cannot query device memory; set total_device_memory, "
            "device_memory_bytes or num_device_blocks"
        )
    info = info_fn()
    size = info.get("memory_size")
    if not size:
        raise ConfigError("mlx did not report memory_size for the default device")
    return int(size)


@dataclass
class EngineConfig:
    """Top-level configuration for the engine."""

    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    memory: MemoryConfig = field(default_factory=MemoryConfig)
    spec_decode: SpecDecodeConfig = field(default_factory=SpecDecodeConfig)

    # Generation defaults
    eos_token_ids: set[int] = field(default_factory=set)
    default_max_new_tokens: int = 512
    default_seed: int = 0

    # Check allocator invariants at every step boundary (slow, for debugging)
    debug_invariants: bool = False

    def validate(self) -> None:
        self.scheduler.validate()
        self.memory.validate()
        self.spec_decode.validate()
        if self.default_max_new_tokens < 1:
            raise ConfigError(
                f"default_max_new_tokens must be >= 1, got {self.default_max_new_tokens}"
            )
