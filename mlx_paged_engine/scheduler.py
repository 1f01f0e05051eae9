"""Continuous batching scheduler over a paged KV cache.

Implements iteration-level scheduling with:
- Thread-safe request intake queue (FIFO) and cancellation set
- Waiting / Running / Swapped queues of SequenceGroups
- Token and sequence budgets per step, chunked prefill
- Strict arrival-order admission gated by the block allocator
- Preemption by swap or recompute when a commit runs out of blocks
- Stop token / stop sequence / EOS / max_tokens detection

The scheduler never runs a model. ``schedule()`` decides what runs in a
step; the engine executes it and feeds the sampled tokens back through
``append_token()``. Except for ``add_request`` and ``abort_request``, every
method must be called from the engine's step (under its lock).
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from typing import Optional

from mlx_paged_engine.block_manager import AllocStatus, BlockAllocator, OutOfBlocksError
from mlx_paged_engine.config import SchedulerConfig
from mlx_paged_engine.sequence import Sequence, SequenceGroup, SequenceStatus
from mlx_paged_engine.types import FinishReason, GenerationRequest

logger = logging.getLogger(__name__)


class QueueFullError(RuntimeError):
    """Raised when the intake queue is at capacity."""


class RequestQueue:
    """Thread-safe FIFO queue for incoming generation requests.

    Uses a threading.Lock and collections.deque for O(1) append/popleft.
    """

    def __init__(self, max_size: int = 128) -> None:
        self._lock = threading.Lock()
        self._queue: deque[GenerationRequest] = deque()
        self._max_size = max_size

    def add(self, request: GenerationRequest) -> None:
        """Add a request to the queue.

        Raises:
            QueueFullError: If the queue is full.
        """
        with self._lock:
            if len(self._queue) >= self._max_size:
                raise QueueFullError(
                    f"Request queue is full (max_size={self._max_size})"
                )
            self._queue.append(request)

    def pop_all(self) -> list[GenerationRequest]:
        """Pop every queued request in arrival order."""
        with self._lock:
            batch = list(self._queue)
            self._queue.clear()
            return batch

    def cancel(self, request_id: str) -> Optional[GenerationRequest]:
        """Remove a request from the queue by request_id.

        Returns the removed request, or None if it was not queued.
        """
        with self._lock:
            for i, req in enumerate(self._queue):
                if req.request_id == request_id:
                    del self._queue[i]
                    return req
            return None

    def request_ids(self) -> list[str]:
        with self._lock:
            return [req.request_id for req in self._queue]

    @property
    def size(self) -> int:
        """Current number of requests in the queue."""
        with self._lock:
            return len(self._queue)


@dataclass
class ScheduledSeq:
    """One sequence's work in a step.

    Attributes:
        num_tokens: Target tokens processed: the prefill chunk length, or 1
            for a decode.
        num_spec_tokens: Draft tokens to propose and verify (decode only).
    """

    group: SequenceGroup
    seq: Sequence
    num_tokens: int
    is_prefill: bool
    num_spec_tokens: int = 0

    @property
    def budget_tokens(self) -> int:
        return self.num_tokens + self.num_spec_tokens

    @property
    def completes_prefill(self) -> bool:
        return self.seq.num_computed_tokens + self.num_tokens >= self.seq.num_tokens


@dataclass
class SchedulerOutputs:
    """Output of one scheduling step."""

    scheduled: list[ScheduledSeq] = field(default_factory=list)
    admitted: list[SequenceGroup] = field(default_factory=list)
    swapped_in: list[SequenceGroup] = field(default_factory=list)
    preempted: list[SequenceGroup] = field(default_factory=list)

    @property
    def num_batched_tokens(self) -> int:
        return sum(s.budget_tokens for s in self.scheduled)

    @property
    def num_prefill_tokens(self) -> int:
        return sum(s.num_tokens for s in self.scheduled if s.is_prefill)

    @property
    def num_decode_seqs(self) -> int:
        return sum(1 for s in self.scheduled if not s.is_prefill)

    def is_empty(self) -> bool:
        return not self.scheduled


@dataclass
class SchedulingBudget:
    token_budget: int
    max_num_seqs: int
    num_batched_tokens: int = 0
    num_seqs: int = 0

    def can_schedule(self, num_new_tokens: int, num_new_seqs: int) -> bool:
        return (
            self.num_batched_tokens + num_new_tokens <= self.token_budget
            and self.num_seqs + num_new_seqs <= self.max_num_seqs
        )

    @property
    def remaining_tokens(self) -> int:
        return self.token_budget - self.num_batched_tokens

    def add(self, num_tokens: int, num_seqs: int) -> None:
        self.num_batched_tokens += num_tokens
        self.num_seqs += num_seqs


class Scheduler:
    """Decides, each step, which sequences run and how much of each.

    Args:
        config: Scheduler configuration.
        allocator: Block allocator shared with the engine.
        eos_token_ids: Tokens that end a sequence unless ``ignore_eos``.
        default_max_new_tokens: Used when a request sets no bound.
        default_seed: Used when a request sets no seed.
    """

    def __init__(
        self,
        config: SchedulerConfig,
        allocator: BlockAllocator,
        eos_token_ids: Optional[set[int]] = None,
        default_max_new_tokens: int = 512,
        default_seed: int = 0,
    ) -> None:
        self.config = config
        self.allocator = allocator
        self.eos_token_ids = set(eos_token_ids or ())
        self.default_max_new_tokens = default_max_new_tokens
        self.default_seed = default_seed

        # Intake (thread-safe)
        self.request_queue = RequestQueue(max_size=config.max_queue_size)
        self._cancelled: set[str] = set()
        self._cancelled_lock = threading.Lock()

        # Step state (engine lock)
        self.waiting: deque[SequenceGroup] = deque()
        self.running: list[SequenceGroup] = []
        self.swapped: deque[SequenceGroup] = deque()
        self._groups: dict[str, SequenceGroup] = {}
        self._finished: list[SequenceGroup] = []
        self._preempted_since_schedule: list[SequenceGroup] = []

        self._stats = {
            "steps": 0,
            "admitted": 0,
            "rejected": 0,
            "cancelled": 0,
            "finished": 0,
            "preempted_swap": 0,
            "preempted_recompute": 0,
            "swapped_in": 0,
        }

    # --- Intake (any thread) ---

    def add_request(self, request: GenerationRequest) -> None:
        """Queue a validated request for admission at the next step."""
        self.request_queue.add(request)
        logger.debug("Queued request %s", request.request_id)

    def abort_request(self, request_id: str) -> None:
        """Mark a request for cancellation at the next step boundary."""
        with self._cancelled_lock:
            self._cancelled.add(request_id)

    def is_cancel_pending(self, request_id: str) -> bool:
        with self._cancelled_lock:
            return request_id in self._cancelled

    def abort_all(self) -> None:
        """Cancel every queued and tracked request at the next step boundary."""
        with self._cancelled_lock:
            self._cancelled.update(self._groups)
            self._cancelled.update(self.request_queue.request_ids())

    # --- Step boundary ---

    def _drain_intake(self) -> None:
        for request in self.request_queue.pop_all():
            sampling = request.sampling
            seed = sampling.seed if sampling.seed is not None else self.default_seed
            max_new = sampling.max_new_tokens or self.default_max_new_tokens
            group = SequenceGroup(request, seed=seed, max_new_tokens=max_new)
            self._groups[group.request_id] = group
            self.waiting.append(group)

    def _apply_cancellations(self) -> None:
        with self._cancelled_lock:
            cancelled = self._cancelled
            self._cancelled = set()
        for request_id in cancelled:
            group = self._groups.get(request_id)
            if group is None:
                continue
            self._stats["cancelled"] += 1
            logger.debug("Cancelling request %s", request_id)
            self.finish_group(group, FinishReason.CANCELLED)

    def schedule(self, num_spec_tokens: int = 0) -> SchedulerOutputs:
        """Build the work for one step.

        Args:
            num_spec_tokens: Draft tokens per decoding sequence when
                speculating (0 = plain decode).
        """
        self._stats["steps"] += 1
        self._drain_intake()
        self._apply_cancellations()

        out = SchedulerOutputs(preempted=self._preempted_since_schedule)
        self._preempted_since_schedule = []
        budget = SchedulingBudget(
            token_budget=self.config.max_num_batched_tokens,
            max_num_seqs=self.config.max_num_seqs,
        )

        self._schedule_running(out, budget, num_spec_tokens)
        if not out.preempted:
            self._schedule_swapped(out, budget, num_spec_tokens)
        if self.config.batching_method == "continuous" or not (self.running or self.swapped):
            self._schedule_waiting(out, budget)
        return out

    def _plan(self, group: SequenceGroup, seq: Sequence, budget: SchedulingBudget, num_spec_tokens: int) -> Optional[ScheduledSeq]:
        """Work for one sequence within the remaining budget, or None."""
        if seq.is_prefill:
            num = seq.num_uncomputed_tokens
            chunk = self.config.prefill_chunk_size
            if chunk > 0:
                num = min(num, chunk, budget.remaining_tokens)
            if num < 1 or not budget.can_schedule(num, 1):
                return None
            return ScheduledSeq(group, seq, num_tokens=num, is_prefill=True)

        room = min(
            group.max_new_tokens - seq.num_output_tokens,
            self.config.max_model_len - seq.num_tokens,
        )
        k = max(0, min(num_spec_tokens, room - 1))
        if not budget.can_schedule(1 + k, 1):
            k = 0
            if not budget.can_schedule(1, 1):
                return None
        return ScheduledSeq(group, seq, num_tokens=1, is_prefill=False, num_spec_tokens=k)

    def _schedule_group(self, group: SequenceGroup, out: SchedulerOutputs, budget: SchedulingBudget, num_spec_tokens: int) -> bool:
        planned = []
        for seq in group.get_seqs(SequenceStatus.RUNNING):
            item = self._plan(group, seq, budget, num_spec_tokens)
            if item is None:
                # Give back what this group already took
                for p in planned:
                    budget.add(-p.budget_tokens, -1)
                return False
            budget.add(item.budget_tokens, 1)
            planned.append(item)
        out.scheduled.extend(planned)
        return bool(planned)

    def _schedule_running(self, out: SchedulerOutputs, budget: SchedulingBudget, num_spec_tokens: int) -> None:
        self.running.sort(key=SequenceGroup.priority_key)
        for group in self.running:
            self._schedule_group(group, out, budget, num_spec_tokens)

    def _swap_in_blocks_needed(self, group: SequenceGroup) -> int:
        seqs = group.get_unfinished_seqs()
        distinct = {b for s in seqs for b in s.block_table.block_ids}
        # One more per sequence for a new or copied block holding its newest token
        return len(distinct) + len(seqs)

    def _admission_status(self, group: SequenceGroup, needed: int) -> AllocStatus:
        watermark = self.config.watermark_blocks
        if group.num_preemptions == 0:
            return self.allocator.status_for_blocks(needed, watermark)
        # Admitted before: the watermark only guards a busy device
        status = self.allocator.status_for_blocks(needed, watermark if self.running else 0)
        if status == AllocStatus.NEVER and needed <= self.allocator.device_pool.num_blocks:
            return AllocStatus.LATER
        return status

    def _schedule_swapped(self, out: SchedulerOutputs, budget: SchedulingBudget, num_spec_tokens: int) -> None:
        ordered = sorted(self.swapped, key=SequenceGroup.priority_key)
        for group in ordered:
            needed = self._swap_in_blocks_needed(group)
            if self._admission_status(group, needed) != AllocStatus.OK:
                break
            if not budget.can_schedule(group.num_unfinished_seqs(), group.num_unfinished_seqs()):
                break
            seqs = group.get_unfinished_seqs()
            self.allocator.swap_in(seqs)
            for seq in seqs:
                self.allocator.append_slot(seq)
            self.swapped.remove(group)
            group.set_status(SequenceStatus.RUNNING)
            self.running.append(group)
            out.swapped_in.append(group)
            self._stats["swapped_in"] += 1
            logger.debug("Swapped in %s", group.request_id)
            self._schedule_group(group, out, budget, num_spec_tokens)

    def _schedule_waiting(self, out: SchedulerOutputs, budget: SchedulingBudget) -> None:
        while self.waiting:
            group = self.waiting[0]
            seqs = group.get_unfinished_seqs()
            needed = sum(self.allocator.blocks_needed(s.num_tokens) for s in seqs)
            status = self._admission_status(group, needed)
            if status == AllocStatus.NEVER:
                self.waiting.popleft()
                self._stats["rejected"] += 1
                usable = self.allocator.device_pool.num_blocks - self.config.watermark_blocks
                logger.warning(
                    "Rejecting %s: needs %d blocks, device budget is %d",
                    group.request_id, needed, usable,
                )
                self.finish_group(
                    group,
                    FinishReason.ERROR,
                    error=f"OutOfBlocks: prompt needs {needed} blocks, device budget is {usable}",
                )
                continue
            if status == AllocStatus.LATER:
                break

            first_chunk = seqs[0].num_tokens
            if self.config.prefill_chunk_size > 0:
                first_chunk = min(first_chunk, self.config.prefill_chunk_size, budget.remaining_tokens)
            if first_chunk < 1 or not budget.can_schedule(first_chunk, len(seqs)):
                break

            self.waiting.popleft()
            for seq in seqs:
                self.allocator.allocate(seq)
            group.set_status(SequenceStatus.RUNNING)
            self.running.append(group)
            out.admitted.append(group)
            self._stats["admitted"] += 1
            logger.debug("Admitted %s (%d blocks)", group.request_id, needed)
            self._schedule_group(group, out, budget, 0)

    # --- Commit ---

    def fork_group(self, group: SequenceGroup) -> list[Sequence]:
        """Fork the prefilled parent into the group's remaining samples."""
        parent = group.seqs[0]
        children = []
        for index in range(len(group.seqs), group.n):
            child = parent.fork(index, seed=group.seed_for(index))
            self.allocator.fork(parent, child)
            group.seqs.append(child)
            children.append(child)
        return children

    def check_stop(self, group: SequenceGroup, seq: Sequence) -> Optional[FinishReason]:
        sampling = seq.sampling
        token = seq.last_token_id
        if token in sampling.stop_token_ids:
            return FinishReason.STOP
        if not sampling.ignore_eos and token in self.eos_token_ids:
            return FinishReason.STOP
        output = seq.output_token_ids
        for stop_seq in sampling.stop_sequences:
            if len(output) >= len(stop_seq) and output[-len(stop_seq):] == stop_seq:
                return FinishReason.STOP
        if seq.num_output_tokens >= group.max_new_tokens:
            return FinishReason.LENGTH
        if seq.num_tokens >= self.config.max_model_len:
            return FinishReason.LENGTH
        return None

    def append_token(self, group: SequenceGroup, seq: Sequence, token_id: int, logprob=None) -> Optional[FinishReason]:
        """Commit one sampled token.

        Checks the stop conditions, then gives the token a KV slot,
        preempting other groups (or this one) when the device is full.

        Returns:
            The finish reason if the sequence just finished, else None.
        """
        seq.append_token(token_id, logprob)
        reason = self.check_stop(group, seq)
        if reason is not None:
            self.finish_seq(group, seq, reason)
            return reason
        if seq.status != SequenceStatus.RUNNING:
            # Preempted earlier in this commit; swap-in or re-prefill covers it
            return None
        while True:
            try:
                self.allocator.append_slot(seq)
                return None
            except OutOfBlocksError:
                victim = self._pick_victim()
                self.preempt(victim)
                if victim is group:
                    return None

    # --- Preemption ---

    def _pick_victim(self) -> SequenceGroup:
        if self.config.preemption_tiebreak == "latest_started":
            return max(self.running, key=lambda g: (-g.priority, g.started_at, g.arrival_seq))
        return max(self.running, key=lambda g: (-g.priority, g.arrival_seq))

    def preempt(self, group: SequenceGroup) -> str:
        """Evict a running group. Returns the mode used ("swap" or "recompute")."""
        self.running.remove(group)
        group.num_preemptions += 1
        self._preempted_since_schedule.append(group)
        seqs = group.get_unfinished_seqs()
        for seq in seqs:
            if seq.block_table.num_lookahead:
                self.allocator.release_lookahead(seq)
        longest = max((s.num_tokens for s in seqs), default=0)
        if (
            self.config.eviction_policy == "swap"
            and longest >= self.config.swap_min_tokens
            and self.allocator.can_swap_out(seqs)
        ):
            self.allocator.swap_out(seqs)
            group.set_status(SequenceStatus.SWAPPED)
            self.swapped.append(group)
            self._stats["preempted_swap"] += 1
            mode = "swap"
        else:
            for seq in seqs:
                self.allocator.free(seq)
                seq.reset_for_recompute()
            group.set_status(SequenceStatus.WAITING)
            self.waiting.appendleft(group)
            self._stats["preempted_recompute"] += 1
            mode = "recompute"
        logger.warning(
            "Preempted %s by %s (%d free device blocks)",
            group.request_id, mode, self.allocator.num_free_device_blocks,
        )
        return mode

    # --- Completion ---

    def finish_seq(self, group: SequenceGroup, seq: Sequence, reason: FinishReason) -> None:
        seq.finish(reason)
        self.allocator.free(seq)
        if group.is_finished():
            self._retire(group)

    def finish_group(self, group: SequenceGroup, reason: FinishReason, error: Optional[str] = None) -> None:
        """Finish every unfinished sequence of a group and release its blocks."""
        if error is not None and group.error is None:
            group.error = error
        for seq in group.get_unfinished_seqs():
            seq.finish(reason)
            self.allocator.free(seq)
        # A parent that never forked still owes its missing samples a reason
        while len(group.seqs) < group.n:
            child = group.seqs[0].fork(len(group.seqs), seed=group.seed_for(len(group.seqs)))
            child.output_token_ids = []
            child.output_logprobs = []
            child.finish(reason)
            group.seqs.append(child)
        self._retire(group)

    def _retire(self, group: SequenceGroup) -> None:
        if self._groups.pop(group.request_id, None) is None:
            return
        if group in self.running:
            self.running.remove(group)
        elif group in self.swapped:
            self.swapped.remove(group)
        elif group in self.waiting:
            self.waiting.remove(group)
        self._finished.append(group)
        self._stats["finished"] += 1
        logger.debug("Finished %s: %s", group.request_id, group.finish_reasons())

    def pop_finished(self) -> list[SequenceGroup]:
        finished = self._finished
        self._finished = []
        return finished

    # --- Introspection ---

    def get_group(self, request_id: str) -> Optional[SequenceGroup]:
        return self._groups.get(request_id)

    @property
    def num_waiting(self) -> int:
        return len(self.waiting)

    @property
    def num_running(self) -> int:
        return len(self.running)

    @property
    def num_swapped(self) -> int:
        return len(self.swapped)

    def has_unfinished(self) -> bool:
        return bool(self._groups) or self.request_queue.size > 0

    def all_sequences(self) -> list[Sequence]:
        return [s for g in self._groups.values() for s in g.seqs]

    def get_stats(self) -> dict[str, int]:
        stats = dict(self._stats)
        stats.update(
            waiting=len(self.waiting),
            running=len(self.running),
            swapped=len(self.swapped),
            queued=self.request_queue.size,
        )
        return stats
