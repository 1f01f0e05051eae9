"""SpeculativeDecoder: draft, verify and commit over the paged cache.

The draft pipeline keeps its own KV storage addressed by the same block
tables as the target, so every block op the allocator records is delivered
to both pipelines. One speculative step for a decoding sequence:

1. Drafting: reserve ``k`` lookahead slots, then run the draft pipeline
   ``k`` times (batched across sequences). The first call also catches the
   draft cache up on any tokens it has not seen.
2. Verifying: one target entry over the newest committed token plus the
   ``k`` drafts, returning ``k + 1`` logits rows. It runs in the same target
   batch as the step's prefill work.
3. Committing: rejection-sample, append the emitted tokens one by one,
   then release unused lookahead blocks and truncate both caches to the
   accepted length.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Optional

import mlx.core as mx

from mlx_paged_engine.block_manager import BlockAllocator, OutOfBlocksError, PendingOps
from mlx_paged_engine.pipeline.base import ExecutionError, Pipeline
from mlx_paged_engine.sampling import Sampler, one_hot
from mlx_paged_engine.sequence import SequenceStatus
from mlx_paged_engine.spec_decode.config import SpecDecodeConfig
from mlx_paged_engine.spec_decode.controller import DynamicSpecController, SpecState
from mlx_paged_engine.spec_decode.verifier import RejectionSampler
from mlx_paged_engine.types import BatchDescriptor, BatchEntry, FinishReason, StepMode, TokenLogprob

if TYPE_CHECKING:
    from mlx_paged_engine.scheduler import ScheduledSeq, Scheduler

logger = logging.getLogger(__name__)


@dataclass
class Proposal:
    """Draft tokens for one sequence.

    Attributes:
        start_position: Position of the first draft token (the sequence's
            token count when drafting began).
        tokens: Draft tokens in order.
        probs: Draft distribution each token was drawn from.
    """

    start_position: int
    tokens: list[int] = field(default_factory=list)
    probs: list[mx.array] = field(default_factory=list)


@dataclass
class SpecCommit:
    tokens: list[int]
    logprobs: list[Optional[TokenLogprob]]
    finish_reason: Optional[FinishReason]
    num_proposed: int
    num_accepted: int
    bonus: bool
    rollback_blocks: int = 0


class SpeculativeDecoder:
    """Runs the speculative phases of a step.

    Attributes:
        draft: The draft pipeline.
        config: SpecDecodeConfig.
        controller: DynamicSpecController deciding k per step.
        allocator: Block allocator shared with the scheduler.
    """

    def __init__(
        self,
        draft: Pipeline,
        config: SpecDecodeConfig,
        allocator: BlockAllocator,
        controller: Optional[DynamicSpecController] = None,
    ) -> None:
        self.draft = draft
        self.config = config
        self.allocator = allocator
        self.controller = controller or DynamicSpecController(config)
        self.rejection_sampler = RejectionSampler()

    def get_k(self, batch_size: int) -> int:
        k = self.controller.get_k(batch_size)
        if k == 0 and batch_size > 0:
            self.controller.record_fallback()
        return k

    # --- Drafting ---

    def reserve(self, scheduled: list[ScheduledSeq]) -> list[ScheduledSeq]:
        """Reserve lookahead slots. Sequences that do not fit decode normally.

        Must be called under the engine lock.
        """
        spec_items = []
        for item in scheduled:
            if item.is_prefill or item.num_spec_tokens == 0:
                continue
            try:
                self.allocator.reserve_lookahead(item.seq, item.num_spec_tokens)
            except OutOfBlocksError:
                self.allocator.release_lookahead(item.seq)
                logger.debug("No lookahead room for %s, decoding without drafts", item.seq.seq_id)
                item.num_spec_tokens = 0
                continue
            spec_items.append(item)
        return spec_items

    def _draft_sampler(self, item: ScheduledSeq) -> Sampler:
        return Sampler(item.seq.sampling, item.seq.seed)

    def propose(self, spec_items: list[ScheduledSeq], step_id: int, pending: PendingOps) -> dict[str, Proposal]:
        """Run the draft pipeline ``k`` times.

        Block ops, forks and releases in ``pending`` are delivered with the
        first draft batch (or an otherwise empty batch when nothing is
        drafted) so the draft cache tracks every block move.

        Returns:
            seq_id -> Proposal for every sequence whose drafting succeeded.
        """
        self.controller.transition(SpecState.DRAFTING)
        proposals = {
            item.seq.seq_id: Proposal(start_position=item.seq.num_tokens) for item in spec_items
        }
        alive = {item.seq.seq_id: item for item in spec_items}
        max_k = max((item.num_spec_tokens for item in spec_items), default=0)

        for j in range(max(1, max_k)):
            entries = []
            for seq_id, item in alive.items():
                if j >= item.num_spec_tokens:
                    continue
                entries.append(self._draft_entry(item, proposals[seq_id], j))
            batch = BatchDescriptor(step_id=step_id, entries=entries)
            if j == 0:
                batch.block_ops = pending.block_ops
                batch.forks = pending.forks
                batch.released = pending.released
            if batch.is_empty():
                continue
            try:
                output = self.draft.run_batch(batch)
                logits = output.logits
            except ExecutionError as e:
                failed = set(alive) if e.seq_ids is None else e.seq_ids
                logger.warning("Draft pipeline failed for %d sequence(s): %s", len(failed), e)
                logits = e.output.logits if e.output is not None else {}
                for seq_id in failed:
                    alive.pop(seq_id, None)
                    proposals.pop(seq_id, None)
            for entry in entries:
                if entry.seq_id not in alive:
                    continue
                item = alive[entry.seq_id]
                proposal = proposals[entry.seq_id]
                token, probs = self._draw_draft(item, proposal, logits[entry.seq_id][-1])
                proposal.tokens.append(token)
                proposal.probs.append(probs)
        return proposals

    def _draft_entry(self, item: ScheduledSeq, proposal: Proposal, j: int) -> BatchEntry:
        seq = item.seq
        if j == 0:
            start = seq.num_draft_computed
            input_ids = seq.token_ids[start:]
        else:
            start = proposal.start_position + j - 1
            input_ids = [proposal.tokens[j - 1]]
        return BatchEntry(
            seq_id=seq.seq_id,
            mode=StepMode.PREFILL if len(input_ids) > 1 else StepMode.DECODE,
            input_ids=input_ids,
            start_pos=start,
            block_table=list(seq.block_table.block_ids),
            slot_mapping=self.allocator.get_slot_mapping(seq, start, start + len(input_ids)),
        )

    def _draw_draft(self, item: ScheduledSeq, proposal: Proposal, logits: mx.array) -> tuple[int, mx.array]:
        seq = item.seq
        sampler = self._draft_sampler(item)
        context = seq.token_ids + proposal.tokens
        adjusted, probs = sampler.distribution(logits, context, seq.num_prompt_tokens)
        position = len(context)
        if self.config.draft_sampling == "greedy":
            token = int(mx.argmax(adjusted).item())
            return token, one_hot(token, probs.shape[-1])
        return sampler.draw(probs, position), probs

    # --- Verifying ---

    def verify_entry(self, item: ScheduledSeq, proposal: Proposal) -> BatchEntry:
        """Target entry over the newest committed token plus every draft."""
        self.controller.transition(SpecState.VERIFYING)
        seq = item.seq
        start = seq.num_computed_tokens
        input_ids = seq.token_ids[start:] + proposal.tokens
        return BatchEntry(
            seq_id=seq.seq_id,
            mode=StepMode.VERIFY,
            input_ids=input_ids,
            start_pos=start,
            block_table=list(seq.block_table.block_ids),
            slot_mapping=self.allocator.get_slot_mapping(seq, start, start + len(input_ids)),
            num_logits=len(proposal.tokens) + 1,
        )

    # --- Committing ---

    def commit(self, item: ScheduledSeq, proposal: Proposal, rows: mx.array, scheduler: Scheduler) -> SpecCommit:
        """Accept or reject the drafts and append the emitted tokens.

        Must be called under the engine lock.
        """
        self.controller.transition(SpecState.COMMITTING)
        seq, group = item.seq, item.group
        n = proposal.start_position
        k = len(proposal.tokens)
        sampler = Sampler(seq.sampling, seq.seed)
        context = seq.token_ids + proposal.tokens

        adjusted_rows, target_probs = [], []
        for i in range(k + 1):
            adjusted, probs = sampler.distribution(rows[i], context[: n + i], seq.num_prompt_tokens)
            adjusted_rows.append(adjusted)
            target_probs.append(probs)

        result = self.rejection_sampler.verify(
            proposal.tokens, proposal.probs, target_probs, seed=seq.seed, start_position=n
        )

        if seq.status == SequenceStatus.RUNNING:
            # Target KV is valid through the last accepted draft; the draft
            # cache never saw the last draft token.
            seq.num_computed_tokens = n + result.num_accepted
            seq.num_draft_computed = min(n + result.num_accepted, n + k - 1)
        elif seq.status == SequenceStatus.SWAPPED:
            # Lookahead blocks were dropped before the swap
            seq.num_computed_tokens = n
            seq.num_draft_computed = n

        tokens, logprobs = [], []
        reason = None
        for i, token in enumerate(result.tokens):
            logprob = sampler.logprob(adjusted_rows[i], token)
            tokens.append(token)
            logprobs.append(logprob)
            reason = scheduler.append_token(group, seq, token, logprob)
            if reason is not None:
                break

        rollback = 0
        if seq.status == SequenceStatus.RUNNING:
            rollback = self.allocator.release_lookahead(seq)
        self.controller.transition(SpecState.IDLE)
        return SpecCommit(
            tokens=tokens,
            logprobs=logprobs,
            finish_reason=reason,
            num_proposed=k,
            num_accepted=result.num_accepted,
            bonus=result.bonus,
            rollback_blocks=rollback,
        )

    def record(self, commits: list[SpecCommit]) -> None:
        """Feed one step's results to the controller."""
        if not commits:
            return
        self.controller.update(
            num_proposed=sum(c.num_proposed for c in commits),
            num_accepted=sum(c.num_accepted for c in commits),
            num_bonus=sum(1 for c in commits if c.bonus),
            num_seqs=len(commits),
            num_rollback_blocks=sum(c.rollback_blocks for c in commits),
        )
