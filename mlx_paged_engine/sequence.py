"""Sequence run-state tracked by the scheduler.

A ``Sequence`` is one stream of tokens (one choice of a request). A
``SequenceGroup`` bundles the ``n`` parallel samples of one
``GenerationRequest``; the group is the unit of admission and preemption so
that forked sequences sharing copy-on-write blocks move together.
"""

from __future__ import annotations

import enum
import itertools
import time
from dataclasses import dataclass, field
from typing import Optional

from mlx_paged_engine.types import (
    FinishReason,
    GenerationRequest,
    SamplingParams,
    TokenLogprob,
    Usage,
)

_arrival_counter = itertools.count()


class SequenceStatus(enum.Enum):
    WAITING = "waiting"
    RUNNING = "running"
    SWAPPED = "swapped"
    FINISHED = "finished"


class Device(enum.Enum):
    DEVICE = "device"
    HOST = "host"


@dataclass
class BlockTable:
    """Ordered block ids covering a sequence's tokens.

    ``num_lookahead`` counts slots reserved past the sequence's last token
    for speculative verification; they are consumed by ``append_slot`` or
    released at the end of the step.
    """

    block_ids: list[int] = field(default_factory=list)
    device: Device = Device.DEVICE
    num_lookahead: int = 0

    def __len__(self) -> int:
        return len(self.block_ids)


class Sequence:
    """Mutable run-state of one generation stream.

    Attributes:
        seq_id: Unique id, ``"<request_id>-<index>"``.
        prompt_token_ids: Immutable prompt.
        output_token_ids: Generated tokens (append-only).
        num_computed_tokens: Leading tokens whose target KV is written.
        num_draft_computed: Leading tokens whose draft KV is written.
        block_table: Physical blocks, managed by the BlockAllocator.
    """

    def __init__(
        self,
        request_id: str,
        index: int,
        prompt_token_ids: list[int],
        sampling: SamplingParams,
        seed: int,
    ) -> None:
        self.request_id = request_id
        self.index = index
        self.seq_id = f"{request_id}-{index}"
        self.prompt_token_ids: tuple[int, ...] = tuple(prompt_token_ids)
        self.output_token_ids: list[int] = []
        self.sampling = sampling
        self.seed = seed

        self.status = SequenceStatus.WAITING
        self.finish_reason: Optional[FinishReason] = None

        self.num_computed_tokens = 0
        self.num_draft_computed = 0
        self.block_table = BlockTable()

        self.output_logprobs: list[TokenLogprob] = []
        self.cumulative_logprob = 0.0

    # --- Token bookkeeping ---

    @property
    def num_tokens(self) -> int:
        return len(self.prompt_token_ids) + len(self.output_token_ids)

    @property
    def num_prompt_tokens(self) -> int:
        return len(self.prompt_token_ids)

    @property
    def num_output_tokens(self) -> int:
        return len(self.output_token_ids)

    @property
    def token_ids(self) -> list[int]:
        return list(self.prompt_token_ids) + self.output_token_ids

    @property
    def last_token_id(self) -> int:
        if self.output_token_ids:
            return self.output_token_ids[-1]
        return self.prompt_token_ids[-1]

    @property
    def num_uncomputed_tokens(self) -> int:
        return self.num_tokens - self.num_computed_tokens

    @property
    def is_prefill(self) -> bool:
        """True while more than the newest token still lacks KV."""
        return self.num_computed_tokens == 0 or self.num_uncomputed_tokens > 1

    def append_token(self, token_id: int, logprob: TokenLogprob | None = None) -> None:
        self.output_token_ids.append(token_id)
        if logprob is not None:
            self.output_logprobs.append(logprob)
            self.cumulative_logprob += logprob.logprob

    def reset_for_recompute(self) -> None:
        """Forget all KV; generated tokens stay and are re-prefilled."""
        self.num_computed_tokens = 0
        self.num_draft_computed = 0

    # --- Status ---

    def is_finished(self) -> bool:
        return self.status == SequenceStatus.FINISHED

    def finish(self, reason: FinishReason) -> None:
        self.status = SequenceStatus.FINISHED
        self.finish_reason = reason

    def fork(self, index: int, seed: int) -> Sequence:
        """Copy run-state into a new sequence. Blocks are shared by the allocator."""
        child = Sequence(
            request_id=self.request_id,
            index=index,
            prompt_token_ids=list(self.prompt_token_ids),
            sampling=self.sampling,
            seed=seed,
        )
        child.output_token_ids = list(self.output_token_ids)
        child.output_logprobs = list(self.output_logprobs)
        child.cumulative_logprob = self.cumulative_logprob
        child.status = self.status
        child.num_computed_tokens = self.num_computed_tokens
        child.num_draft_computed = self.num_draft_computed
        return child

    def __repr__(self) -> str:
        return (
            f"Sequence(seq_id={self.seq_id!r}, status={self.status.value}, "
            f"num_tokens={self.num_tokens}, computed={self.num_computed_tokens}, "
            f"blocks={self.block_table.block_ids})"
        )


class SequenceGroup:
    """All sequences generated for one request.

    The group starts with one sequence. When ``sampling.n > 1`` the parent
    is forked after its prompt is prefilled, so all choices share the
    prompt's blocks copy-on-write.
    """

    def __init__(self, request: GenerationRequest, seed: int, max_new_tokens: int) -> None:
        self.request = request
        self.request_id = request.request_id
        self.sampling = request.sampling
        self.max_new_tokens = max_new_tokens
        self.priority = request.priority
        self.arrival_time = request.arrival_time
        self.arrival_seq = next(_arrival_counter)
        self.base_seed = seed
        self.started_at: float = 0.0
        self.first_token_time: Optional[float] = None
        self.num_preemptions = 0
        self.error: Optional[str] = None
        self.seqs: list[Sequence] = [
            Sequence(
                request_id=request.request_id,
                index=0,
                prompt_token_ids=request.prompt_tokens,
                sampling=request.sampling,
                seed=seed,
            )
        ]

    @property
    def n(self) -> int:
        return self.sampling.n

    @property
    def needs_fork(self) -> bool:
        return len(self.seqs) < self.n and not self.seqs[0].output_token_ids

    def seed_for(self, index: int) -> int:
        return self.base_seed + index

    def priority_key(self) -> tuple[int, int]:
        """Sort key: smaller runs first (higher priority, then older)."""
        return (-self.priority, self.arrival_seq)

    def get_seqs(self, status: SequenceStatus | None = None) -> list[Sequence]:
        if status is None:
            return list(self.seqs)
        return [s for s in self.seqs if s.status == status]

    def get_unfinished_seqs(self) -> list[Sequence]:
        return [s for s in self.seqs if not s.is_finished()]

    def num_unfinished_seqs(self) -> int:
        return len(self.get_unfinished_seqs())

    def is_finished(self) -> bool:
        return all(s.is_finished() for s in self.seqs) and not self.needs_fork

    def set_status(self, status: SequenceStatus) -> None:
        for seq in self.get_unfinished_seqs():
            seq.status = status
        if status == SequenceStatus.RUNNING:
            self.started_at = time.monotonic()

    def finish_all(self, reason: FinishReason) -> list[Sequence]:
        """Finish every unfinished sequence. Returns the ones that changed."""
        changed = self.get_unfinished_seqs()
        for seq in changed:
            seq.finish(reason)
        return changed

    def finish_reasons(self) -> list[FinishReason]:
        return [
            s.finish_reason if s.finish_reason is not None else FinishReason.ERROR
            for s in sorted(self.seqs, key=lambda s: s.index)
        ]

    def usage(self) -> Usage:
        return Usage(
            prompt_tokens=len(self.request.prompt_tokens),
            completion_tokens=sum(s.num_output_tokens for s in self.seqs),
        )

    def __repr__(self) -> str:
        return (
            f"SequenceGroup(request_id={self.request_id!r}, n={self.n}, "
            f"seqs={[s.seq_id for s in self.seqs]})"
        )
