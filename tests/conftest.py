"""Shared fixtures for mlx-paged-engine tests."""

from __future__ import annotations

from typing import Optional

import pytest

from mlx_paged_engine.block_manager import BlockAllocator
from mlx_paged_engine.config import EngineConfig, MemoryConfig, SchedulerConfig
from mlx_paged_engine.engine import Engine
from mlx_paged_engine.pipeline.synthetic import SyntheticPipeline
from mlx_paged_engine.scheduler import Scheduler
from mlx_paged_engine.spec_decode.config import SpecDecodeConfig
from mlx_paged_engine.types import (
    GenerationRequest,
    RequestFinished,
    SamplingParams,
    TokenDelta,
)

BLOCK_SIZE = 4
VOCAB_SIZE = 64


# ---------------------------------------------------------------------------
# Factories
# ---------------------------------------------------------------------------


def make_request(
    request_id: str = "req-1",
    prompt_tokens: Optional[list[int]] = None,
    max_new_tokens: int = 8,
    priority: int = 0,
    **sampling,
) -> GenerationRequest:
    """A request that ignores EOS unless told otherwise."""
    sampling.setdefault("ignore_eos", True)
    return GenerationRequest(
        request_id=request_id,
        prompt_tokens=prompt_tokens or [1, 2, 3],
        sampling=SamplingParams(max_new_tokens=max_new_tokens, **sampling),
        priority=priority,
    )


def make_config(
    num_device_blocks: int = 64,
    num_host_blocks: int = 64,
    block_size: int = BLOCK_SIZE,
    spec_decode: Optional[SpecDecodeConfig] = None,
    **scheduler_overrides,
) -> EngineConfig:
    """Small engine config with invariant checks on every step."""
    return EngineConfig(
        scheduler=SchedulerConfig(**scheduler_overrides),
        memory=MemoryConfig(
            block_size=block_size,
            num_device_blocks=num_device_blocks,
            num_host_blocks=num_host_blocks,
        ),
        spec_decode=spec_decode or SpecDecodeConfig(),
        debug_invariants=True,
    )


def make_pipeline(model_seed: int = 0, block_size: int = BLOCK_SIZE, **kwargs) -> SyntheticPipeline:
    return SyntheticPipeline(
        vocab_size=VOCAB_SIZE, block_size=block_size, model_seed=model_seed, **kwargs
    )


def make_engine(
    num_device_blocks: int = 64,
    num_host_blocks: int = 64,
    draft_seed: Optional[int] = None,
    spec_decode: Optional[SpecDecodeConfig] = None,
    **scheduler_overrides,
) -> Engine:
    """Engine over a SyntheticPipeline; with ``draft_seed`` it also speculates."""
    config = make_config(
        num_device_blocks=num_device_blocks,
        num_host_blocks=num_host_blocks,
        spec_decode=spec_decode,
        **scheduler_overrides,
    )
    draft = None
    if draft_seed is not None:
        draft = make_pipeline(model_seed=draft_seed, name="draft")
    return Engine(make_pipeline(), config=config, draft_pipeline=draft)


def make_allocator(num_device_blocks: int = 8, num_host_blocks: int = 8) -> BlockAllocator:
    return BlockAllocator(BLOCK_SIZE, num_device_blocks, num_host_blocks)


def make_scheduler(allocator: Optional[BlockAllocator] = None, **overrides) -> Scheduler:
    return Scheduler(
        SchedulerConfig(**overrides),
        allocator or make_allocator(),
        eos_token_ids={0},
    )


# ---------------------------------------------------------------------------
# Running requests to completion
# ---------------------------------------------------------------------------


class RunResult:
    """Events collected for one request."""

    def __init__(self) -> None:
        self.deltas: list[TokenDelta] = []
        self.finished: Optional[RequestFinished] = None
        self.num_terminal = 0

    def tokens(self, index: int = 0) -> list[int]:
        return [t for d in self.deltas if d.index == index for t in d.token_ids]


def drain(streams: dict, results: dict[str, RunResult]) -> None:
    for rid, stream in streams.items():
        result = results.setdefault(rid, RunResult())
        while not stream.empty():
            event = stream.get_nowait()
            if isinstance(event, RequestFinished):
                result.finished = event
                result.num_terminal += 1
            else:
                result.deltas.append(event)


def run_all(engine: Engine, requests: list[GenerationRequest], max_steps: int = 500) -> dict[str, RunResult]:
    """Submit every request, step until idle, and collect the events."""
    streams = {r.request_id: engine.submit(r) for r in requests}
    results: dict[str, RunResult] = {}
    for _ in range(max_steps):
        if not engine.has_unfinished():
            break
        engine.step()
        drain(streams, results)
    drain(streams, results)
    assert not engine.has_unfinished(), "engine did not drain"
    return results


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def engine() -> Engine:
    return make_engine()


@pytest.fixture
def allocator() -> BlockAllocator:
    return make_allocator()


class SimpleTokenizer:
    """Decodes each token id as a lowercase letter."""

    def decode(self, ids: list[int]) -> str:
        return "".join(chr(ord("a") + i % 26) for i in ids)


@pytest.fixture
def mock_tokenizer() -> SimpleTokenizer:
    return SimpleTokenizer()
