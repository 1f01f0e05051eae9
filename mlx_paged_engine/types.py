"""Shared data types for mlx-paged-engine.

All components (block allocator, scheduler, speculative decoder, streamer)
import from here to ensure consistent interfaces.
"""

from __future__ import annotations

import enum
import time
from dataclasses import dataclass, field
from typing import Any, Optional, Union


class InvalidRequestError(ValueError):
    """Raised at admission for malformed sampling configuration or bounds."""


class FinishReason(str, enum.Enum):
    STOP = "stop"
    LENGTH = "length"
    CANCELLED = "cancelled"
    ERROR = "error"


class RequestKind(str, enum.Enum):
    """Presentation format of a request. The scheduler never looks at it."""

    COMPLETION = "completion"
    CHAT = "chat"


@dataclass
class SamplingParams:
    """Per-request sampling configuration.

    ``temperature == 0`` selects greedy decoding. ``stop_sequences`` are
    token-id sequences matched against the generated suffix. ``seed`` makes
    every draw for this request reproducible; None uses the engine default.
    """

    temperature: float = 1.0
    top_k: int = 0  # 0 = disabled
    top_p: float = 1.0
    min_p: float = 0.0
    repetition_penalty: float = 1.0
    presence_penalty: float = 0.0
    frequency_penalty: float = 0.0
    logit_bias: dict[int, float] = field(default_factory=dict)
    stop_token_ids: list[int] = field(default_factory=list)
    stop_sequences: list[list[int]] = field(default_factory=list)
    max_new_tokens: Optional[int] = None
    logprobs: bool = False
    top_logprobs: int = 0
    n: int = 1
    seed: Optional[int] = None
    ignore_eos: bool = False

    @property
    def is_greedy(self) -> bool:
        return self.temperature == 0.0

    def validate(self, vocab_size: int | None = None) -> None:
        """Raise InvalidRequestError if any field is out of range."""
        if self.temperature < 0.0:
            raise InvalidRequestError(
                f"temperature must be >= 0, got {self.temperature}"
            )
        if self.top_k < 0:
            raise InvalidRequestError(f"top_k must be >= 0, got {self.top_k}")
        if not (0.0 < self.top_p <= 1.0):
            raise InvalidRequestError(f"top_p must be in (0, 1], got {self.top_p}")
        if not (0.0 <= self.min_p < 1.0):
            raise InvalidRequestError(f"min_p must be in [0, 1), got {self.min_p}")
        if self.repetition_penalty <= 0.0:
            raise InvalidRequestError(
                f"repetition_penalty must be > 0, got {self.repetition_penalty}"
            )
        if not (-2.0 <= self.presence_penalty <= 2.0):
            raise InvalidRequestError(
                f"presence_penalty must be in [-2, 2], got {self.presence_penalty}"
            )
        if not (-2.0 <= self.frequency_penalty <= 2.0):
            raise InvalidRequestError(
                f"frequency_penalty must be in [-2, 2], got {self.frequency_penalty}"
            )
        if self.max_new_tokens is not None and self.max_new_tokens < 1:
            raise InvalidRequestError(
                f"max_new_tokens must be >= 1, got {self.max_new_tokens}"
            )
        if not (0 <= self.top_logprobs <= 20):
            raise InvalidRequestError(
                f"top_logprobs must be in [0, 20], got {self.top_logprobs}"
            )
        if self.top_logprobs > 0 and not self.logprobs:
            raise InvalidRequestError("top_logprobs requires logprobs=True")
        if self.n < 1:
            raise InvalidRequestError(f"n must be >= 1, got {self.n}")
        if any(not seq for seq in self.stop_sequences):
            raise InvalidRequestError("stop_sequences must not contain empty sequences")
        if vocab_size is not None:
            ids = list(self.stop_token_ids) + list(self.logit_bias)
            for stop_seq in self.stop_sequences:
                ids.extend(stop_seq)
            bad = [t for t in ids if not (0 <= t < vocab_size)]
            if bad:
                raise InvalidRequestError(
                    f"token ids out of vocabulary range [0, {vocab_size}): {bad[:8]}"
                )


@dataclass
class GenerationRequest:
    """A single generation request from a front end."""

    request_id: str
    prompt_tokens: list[int]
    sampling: SamplingParams = field(default_factory=SamplingParams)
    kind: RequestKind = RequestKind.COMPLETION
    tools: Optional[list[dict[str, Any]]] = None  # Passed through untouched
    priority: int = 0  # Higher runs first; ties broken by arrival order
    arrival_time: float = field(default_factory=time.time)

    def validate(self, vocab_size: int | None = None, max_model_len: int | None = None) -> None:
        if not self.request_id:
            raise InvalidRequestError("request_id must be non-empty")
        if not self.prompt_tokens:
            raise InvalidRequestError("prompt_tokens must be non-empty")
        if vocab_size is not None:
            bad = [t for t in self.prompt_tokens if not (0 <= t < vocab_size)]
            if bad:
                raise InvalidRequestError(
                    f"prompt token ids out of vocabulary range [0, {vocab_size}): {bad[:8]}"
                )
        if max_model_len is not None and len(self.prompt_tokens) >= max_model_len:
            raise InvalidRequestError(
                f"prompt length {len(self.prompt_tokens)} leaves no room to "
                f"generate within max_model_len={max_model_len}"
            )
        self.sampling.validate(vocab_size)


# ---------------------------------------------------------------------------
# Response events (closed variant set)
# ---------------------------------------------------------------------------


@dataclass
class TokenLogprob:
    """Log probability of a sampled token plus the top alternatives."""

    token_id: int
    logprob: float
    top: list[tuple[int, float]] = field(default_factory=list)


@dataclass
class Usage:
    prompt_tokens: int = 0
    completion_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens


@dataclass
class TokenDelta:
    """Newly committed tokens for one choice of a request."""

    request_id: str
    index: int
    token_ids: list[int]
    logprobs: Optional[list[TokenLogprob]] = None
    text: Optional[str] = None
    finish_reason: Optional[FinishReason] = None


@dataclass
class RequestFinished:
    """Terminal event. Exactly one is emitted per request."""

    request_id: str
    finish_reasons: list[FinishReason]
    usage: Usage
    kind: RequestKind = RequestKind.COMPLETION
    tools: Optional[list[dict[str, Any]]] = None
    error: Optional[str] = None

    @property
    def finish_reason(self) -> FinishReason:
        """Overall reason: error dominates, then cancellation."""
        for reason in (FinishReason.ERROR, FinishReason.CANCELLED):
            if reason in self.finish_reasons:
                return reason
        if FinishReason.LENGTH in self.finish_reasons:
            return FinishReason.LENGTH
        return FinishReason.STOP


ResponseEvent = Union[TokenDelta, RequestFinished]


# ---------------------------------------------------------------------------
# Executor contract
# ---------------------------------------------------------------------------


class StepMode(str, enum.Enum):
    PREFILL = "prefill"
    DECODE = "decode"
    VERIFY = "verify"


@dataclass
class BatchEntry:
    """Work for one sequence in one forward pass.

    ``input_ids`` are written at positions ``start_pos ..
    start_pos + len(input_ids) - 1`` into ``slot_mapping``. The pipeline
    returns ``num_logits`` logit rows for the trailing positions.
    """

    seq_id: str
    mode: StepMode
    input_ids: list[int]
    start_pos: int
    block_table: list[int]
    slot_mapping: list[int]
    num_logits: int = 1


class BlockOpKind(str, enum.Enum):
    COPY = "copy"  # device -> device (copy-on-write)
    SWAP_OUT = "swap_out"  # device -> host
    SWAP_IN = "swap_in"  # host -> device


@dataclass(frozen=True)
class BlockOp:
    kind: BlockOpKind
    src: int
    dst: int


@dataclass
class BatchDescriptor:
    """A finalized batch handed to a pipeline. Owns no locks.

    ``block_ops`` must be applied in order, before any entry is run: each
    op was recorded against the block contents left by the ops before it.
    ``forks`` and ``released`` tell pipelines that keep per-sequence state
    which sequences were copied or dropped since the previous batch.
    """

    step_id: int
    entries: list[BatchEntry] = field(default_factory=list)
    block_ops: list[BlockOp] = field(default_factory=list)
    forks: list[tuple[str, str]] = field(default_factory=list)  # (parent, child)
    released: list[str] = field(default_factory=list)

    @property
    def blocks_to_copy(self) -> list[tuple[int, int]]:
        return self._pairs(BlockOpKind.COPY)

    @property
    def blocks_to_swap_out(self) -> list[tuple[int, int]]:
        return self._pairs(BlockOpKind.SWAP_OUT)

    @property
    def blocks_to_swap_in(self) -> list[tuple[int, int]]:
        return self._pairs(BlockOpKind.SWAP_IN)

    def _pairs(self, kind: BlockOpKind) -> list[tuple[int, int]]:
        return [(op.src, op.dst) for op in self.block_ops if op.kind == kind]

    @property
    def num_tokens(self) -> int:
        return sum(len(e.input_ids) for e in self.entries)

    def is_empty(self) -> bool:
        return not (self.entries or self.block_ops or self.forks or self.released)
