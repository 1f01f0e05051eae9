"""Engine loop tying scheduler, allocator, pipelines and streamer together.

Each ``step()``:

1. Under the lock: apply cancellations, schedule, reserve lookahead slots,
   collect pending block ops and build the target entries.
2. Without the lock: run the draft pipeline (when speculating) and the
   target pipeline.
3. Under the lock: commit sampled tokens, finish and free sequences, and
   emit response events.

``submit`` and ``cancel`` are safe from any thread; they only touch the
intake queue, the cancellation set and the streamer. ``step`` may also be
called from several threads (``generate`` without a background loop); a
second caller waits until the step in flight has committed.
"""

from __future__ import annotations

import logging
import queue
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Optional

import mlx.core as mx

from mlx_paged_engine.block_manager import BlockAllocator, PendingOps
from mlx_paged_engine.config import ConfigError, EngineConfig
from mlx_paged_engine.pipeline.base import ExecutionError, Pipeline
from mlx_paged_engine.sampling import Sampler
from mlx_paged_engine.scheduler import ScheduledSeq, Scheduler
from mlx_paged_engine.sequence import SequenceGroup, SequenceStatus
from mlx_paged_engine.spec_decode.config import SpeculativeConfigError, validate_pairing
from mlx_paged_engine.spec_decode.engine import Proposal, SpeculativeDecoder
from mlx_paged_engine.streamer import ResponseStreamer
from mlx_paged_engine.types import (
    BatchDescriptor,
    BatchEntry,
    FinishReason,
    GenerationRequest,
    InvalidRequestError,
    RequestFinished,
    ResponseEvent,
    StepMode,
    TokenDelta,
    TokenLogprob,
)

logger = logging.getLogger(__name__)


class CancellationToken:
    """Shared shutdown signal. Once set, every request is cancelled."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    def is_cancelled(self) -> bool:
        return self._event.is_set()


@dataclass
class _StepPlan:
    step_id: int
    scheduled: list[ScheduledSeq]
    spec_items: list[ScheduledSeq]
    pending: PendingOps
    entries: dict[str, BatchEntry] = field(default_factory=dict)


@dataclass
class _StepResult:
    logits: dict[str, mx.array]
    proposals: dict[str, Proposal]
    failed: set[str]
    error: Optional[str] = None


@dataclass
class _Delta:
    group: SequenceGroup
    index: int
    tokens: list[int] = field(default_factory=list)
    logprobs: list[Optional[TokenLogprob]] = field(default_factory=list)
    finish_reason: Optional[FinishReason] = None


class Engine:
    """Continuous-batching inference engine over a paged KV cache.

    Args:
        pipeline: Target model pipeline.
        config: Engine configuration (validated here).
        draft_pipeline: Optional draft model for speculative decoding.
        tokenizer: Optional detokenizer for ``TokenDelta.text``.
        cancel_token: Shared shutdown signal.

    Raises:
        ConfigError: If the configuration is invalid.
        SpeculativeConfigError: If the draft cannot pair with the target
            and ``on_config_error="abort"``.
    """

    def __init__(
        self,
        pipeline: Pipeline,
        config: Optional[EngineConfig] = None,
        draft_pipeline: Optional[Pipeline] = None,
        tokenizer: Any = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> None:
        self.config = config or EngineConfig()
        self.config.validate()
        self.pipeline = pipeline
        self.cancel_token = cancel_token or CancellationToken()

        spec_cfg = self.config.spec_decode
        if draft_pipeline is not None and spec_cfg.enabled:
            try:
                validate_pairing(draft_pipeline, pipeline)
            except SpeculativeConfigError as e:
                if spec_cfg.on_config_error == "abort":
                    raise
                logger.warning("Speculative decoding disabled: %s", e)
                draft_pipeline = None
        elif draft_pipeline is not None:
            draft_pipeline = None
        self.draft_pipeline = draft_pipeline

        block_size = self.config.memory.block_size
        for p in (pipeline, draft_pipeline):
            p_block_size = getattr(p, "block_size", None)
            if p_block_size is not None and p_block_size != block_size:
                raise ConfigError(
                    f"{p.name} uses block_size={p_block_size}, allocator uses {block_size}"
                )

        kv_bytes = pipeline.kv_footprint_per_token
        if draft_pipeline is not None:
            kv_bytes += draft_pipeline.kv_footprint_per_token
        num_device, num_host = self.config.memory.resolve(kv_bytes)

        self.allocator = BlockAllocator(self.config.memory.block_size, num_device, num_host)
        self.scheduler = Scheduler(
            self.config.scheduler,
            self.allocator,
            eos_token_ids=self.config.eos_token_ids,
            default_max_new_tokens=self.config.default_max_new_tokens,
            default_seed=self.config.default_seed,
        )
        self.spec: Optional[SpeculativeDecoder] = None
        if draft_pipeline is not None:
            self.spec = SpeculativeDecoder(draft_pipeline, spec_cfg, self.allocator)
            logger.info(
                "Speculative decoding enabled: draft=%s target=%s k=%d",
                draft_pipeline.name, pipeline.name, spec_cfg.num_speculative_tokens,
            )
        if tokenizer is None:
            tokenizer = getattr(pipeline, "tokenizer", None)
        self.streamer = ResponseStreamer(tokenizer)

        self._lock = threading.Lock()
        # Held across prepare, execute and commit; _lock only guards state
        self._step_lock = threading.Lock()
        self._step_id = 0
        self._shutdown_logged = False

        # Background loop control
        self._running = False
        self._wakeup = threading.Event()
        self._thread: Optional[threading.Thread] = None

    # --- Intake (any thread) ---

    def submit(self, request: GenerationRequest) -> queue.Queue[ResponseEvent]:
        """Validate and enqueue a request.

        Returns:
            The queue receiving the request's events.

        Raises:
            InvalidRequestError: If the request is malformed or asks for more
                samples than one step can schedule.
            QueueFullError: If the intake queue is at capacity.
            ValueError: If the request id is already in flight.
        """
        request.validate(self.pipeline.vocab_size, self.config.scheduler.max_model_len)
        max_num_seqs = self.config.scheduler.max_num_seqs
        if request.sampling.n > max_num_seqs:
            raise InvalidRequestError(
                f"n={request.sampling.n} exceeds max_num_seqs={max_num_seqs}"
            )
        stream = self.streamer.register(request.request_id)
        try:
            self.scheduler.add_request(request)
        except Exception:
            self.streamer.unregister(request.request_id)
            raise
        self._wakeup.set()
        return stream

    def cancel(self, request_id: str) -> None:
        """Cancel a request at the next step boundary."""
        self.scheduler.abort_request(request_id)
        self._wakeup.set()

    def generate(self, request: GenerationRequest, timeout: Optional[float] = None) -> list[ResponseEvent]:
        """Submit a request and block until its terminal event.

        Without a background loop the calling thread drives ``step()``.
        """
        stream = self.submit(request)
        if self._running:
            return ResponseStreamer.get_result(stream, timeout)
        deadline = None if timeout is None else time.monotonic() + timeout
        events: list[ResponseEvent] = []
        while True:
            self.step()
            while not stream.empty():
                event = stream.get_nowait()
                events.append(event)
                if isinstance(event, RequestFinished):
                    return events
            if deadline is not None and time.monotonic() > deadline:
                raise TimeoutError(f"{request.request_id} did not finish within {timeout}s")

    # --- Step ---

    def has_unfinished(self) -> bool:
        return self.scheduler.has_unfinished()

    def step(self) -> list[ResponseEvent]:
        """Run one scheduling step. Returns the events it emitted.

        Steps from different threads run one at a time.
        """
        with self._step_lock:
            return self._step()

    def _step(self) -> list[ResponseEvent]:
        with self._lock:
            self._check_shutdown()
            plan = self._prepare()
            events = self._finished_events()
        if plan is not None:
            try:
                result = self._execute(plan)
            except Exception as e:
                logger.error("Step %d failed: %s", plan.step_id, e, exc_info=True)
                result = _StepResult(
                    logits={}, proposals={},
                    failed={item.seq.seq_id for item in plan.scheduled},
                    error=f"{type(e).__name__}: {e}",
                )
            with self._lock:
                try:
                    events += self._commit(plan, result)
                except Exception as e:
                    logger.error("Commit of step %d failed: %s", plan.step_id, e, exc_info=True)
                    events += self._fail_groups(
                        {item.group for item in plan.scheduled}, f"{type(e).__name__}: {e}"
                    )
                if self.config.debug_invariants:
                    self.allocator.check_invariants(self.scheduler.all_sequences())
        self.streamer.emit_all(events)
        return events

    def run_until_complete(self, max_steps: Optional[int] = None) -> int:
        """Step until no request is left. Returns the number of steps."""
        steps = 0
        while self.has_unfinished():
            if max_steps is not None and steps >= max_steps:
                break
            self.step()
            steps += 1
        return steps

    def _check_shutdown(self) -> None:
        if self.cancel_token.is_cancelled():
            if not self._shutdown_logged:
                logger.info("Cancellation token set, cancelling all requests")
                self._shutdown_logged = True
            self.scheduler.abort_all()

    def _num_decoding(self) -> int:
        return sum(
            1
            for group in self.scheduler.running
            for seq in group.get_seqs(SequenceStatus.RUNNING)
            if not seq.is_prefill
        )

    def _prepare(self) -> Optional[_StepPlan]:
        k = self.spec.get_k(self._num_decoding()) if self.spec is not None else 0
        out = self.scheduler.schedule(num_spec_tokens=k)
        if out.is_empty():
            return None

        spec_items = self.spec.reserve(out.scheduled) if self.spec is not None else []
        self._step_id += 1
        plan = _StepPlan(
            step_id=self._step_id,
            scheduled=out.scheduled,
            spec_items=spec_items,
            pending=self.allocator.pop_pending_ops(),
        )
        spec_ids = {item.seq.seq_id for item in spec_items}
        for item in out.scheduled:
            if item.seq.seq_id not in spec_ids:
                plan.entries[item.seq.seq_id] = self._entry(item)
        logger.debug(
            "Step %d: %d seqs, %d tokens (%d prefill), %d speculative",
            plan.step_id, len(out.scheduled), out.num_batched_tokens,
            out.num_prefill_tokens, len(spec_items),
        )
        return plan

    def _entry(self, item: ScheduledSeq) -> BatchEntry:
        seq = item.seq
        start = seq.num_computed_tokens
        end = start + item.num_tokens
        return BatchEntry(
            seq_id=seq.seq_id,
            mode=StepMode.PREFILL if item.is_prefill else StepMode.DECODE,
            input_ids=seq.token_ids[start:end],
            start_pos=start,
            block_table=list(seq.block_table.block_ids),
            slot_mapping=self.allocator.get_slot_mapping(seq, start, end),
            num_logits=1 if end >= seq.num_tokens else 0,
        )

    def _execute(self, plan: _StepPlan) -> _StepResult:
        proposals: dict[str, Proposal] = {}
        if self.spec is not None:
            proposals = self.spec.propose(plan.spec_items, plan.step_id, plan.pending)
            for item in plan.spec_items:
                seq_id = item.seq.seq_id
                proposal = proposals.get(seq_id)
                if proposal is None or not proposal.tokens:
                    proposals.pop(seq_id, None)
                    item.num_spec_tokens = 0
                    plan.entries[seq_id] = self._entry(item)
                else:
                    plan.entries[seq_id] = self.spec.verify_entry(item, proposal)

        batch = BatchDescriptor(
            step_id=plan.step_id,
            entries=[plan.entries[item.seq.seq_id] for item in plan.scheduled],
            block_ops=plan.pending.block_ops,
            forks=plan.pending.forks,
            released=plan.pending.released,
        )
        try:
            output = self.pipeline.run_batch(batch)
            return _StepResult(logits=output.logits, proposals=proposals, failed=set())
        except ExecutionError as e:
            failed = set(plan.entries) if e.seq_ids is None else set(e.seq_ids)
            logger.error("Step %d: %s failed for %d sequence(s): %s",
                         plan.step_id, self.pipeline.name, len(failed), e)
            logits = e.output.logits if e.output is not None else {}
            return _StepResult(logits=logits, proposals=proposals, failed=failed, error=str(e))

    # --- Commit ---

    def _commit(self, plan: _StepPlan, result: _StepResult) -> list[ResponseEvent]:
        failed_groups = {item.group for item in plan.scheduled if item.seq.seq_id in result.failed}
        events = self._fail_groups(failed_groups, result.error or "execution failed")

        live = [
            item for item in plan.scheduled
            if item.group not in failed_groups and not item.seq.is_finished()
        ]
        spec_live, plain_live = [], []
        for item in live:
            (spec_live if item.seq.seq_id in result.proposals else plain_live).append(item)

        # Lookahead of sequences that ended up decoding plainly
        for item in plan.spec_items:
            if item.seq.seq_id not in result.proposals and item.seq.block_table.num_lookahead:
                self.allocator.release_lookahead(item.seq)

        # KV written by this step, before any preemption can reset it
        for item in plain_live:
            item.seq.num_computed_tokens += item.num_tokens

        deltas: dict[str, _Delta] = {}
        spec_commits = []
        for item in spec_live:
            seq = item.seq
            if self.scheduler.is_cancel_pending(item.group.request_id):
                self.allocator.release_lookahead(seq)
                continue
            commit = self.spec.commit(
                item, result.proposals[seq.seq_id], result.logits[seq.seq_id], self.scheduler
            )
            spec_commits.append(commit)
            delta = deltas.setdefault(seq.seq_id, _Delta(item.group, seq.index))
            delta.tokens += commit.tokens
            delta.logprobs += commit.logprobs
            delta.finish_reason = commit.finish_reason
        if self.spec is not None:
            self.spec.record(spec_commits)

        for item in plain_live:
            rows = result.logits.get(item.seq.seq_id)
            if rows is None or rows.shape[0] == 0:
                continue
            if self.scheduler.is_cancel_pending(item.group.request_id):
                continue
            self._sample(item, rows[-1], deltas)

        events.extend(self._delta_events(deltas))
        events.extend(self._finished_events())
        return events

    def _sample(self, item: ScheduledSeq, row: mx.array, deltas: dict[str, _Delta]) -> None:
        group = item.group
        seqs = [item.seq]
        if group.needs_fork and item.seq.index == 0:
            seqs += self.scheduler.fork_group(group)
        for seq in seqs:
            sampler = Sampler(seq.sampling, seq.seed)
            token, logprob = sampler.sample(row, seq.token_ids, seq.num_prompt_tokens)
            if group.first_token_time is None:
                group.first_token_time = time.monotonic()
            reason = self.scheduler.append_token(group, seq, token, logprob)
            delta = deltas.setdefault(seq.seq_id, _Delta(group, seq.index))
            delta.tokens.append(token)
            delta.logprobs.append(logprob)
            delta.finish_reason = reason

    def _delta_events(self, deltas: dict[str, _Delta]) -> list[ResponseEvent]:
        events: list[ResponseEvent] = []
        for delta in deltas.values():
            if not delta.tokens:
                continue
            logprobs = None
            if delta.group.sampling.logprobs:
                logprobs = [lp for lp in delta.logprobs if lp is not None]
            events.append(
                TokenDelta(
                    request_id=delta.group.request_id,
                    index=delta.index,
                    token_ids=delta.tokens,
                    logprobs=logprobs,
                    finish_reason=delta.finish_reason,
                )
            )
        return events

    def _fail_groups(self, groups: set[SequenceGroup], error: str) -> list[ResponseEvent]:
        for group in sorted(groups, key=SequenceGroup.priority_key):
            self.scheduler.finish_group(group, FinishReason.ERROR, error=error)
        return self._finished_events()

    def _finished_events(self) -> list[ResponseEvent]:
        events: list[ResponseEvent] = []
        for group in self.scheduler.pop_finished():
            request = group.request
            events.append(
                RequestFinished(
                    request_id=group.request_id,
                    finish_reasons=group.finish_reasons(),
                    usage=group.usage(),
                    kind=request.kind,
                    tools=request.tools,
                    error=group.error,
                )
            )
        return events

    # --- Background loop ---

    def start(self) -> None:
        """Run the step loop in a background daemon thread."""
        if self._running:
            return
        self._running = True
        self._thread = threading.Thread(target=self._loop, name="mlx-paged-engine", daemon=True)
        self._thread.start()
        logger.info("Engine loop started")

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        """Stop the background loop. In-flight requests stay queued."""
        self._running = False
        self._wakeup.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None
        logger.info("Engine loop stopped")

    def _loop(self) -> None:
        while self._running:
            if not self.has_unfinished():
                self._wakeup.wait(timeout=0.05)
                self._wakeup.clear()
                continue
            try:
                self.step()
            except Exception as e:
                logger.error("Engine loop error: %s", e, exc_info=True)
                time.sleep(0.01)

    # --- Introspection ---

    def get_stats(self) -> dict[str, Any]:
        stats: dict[str, Any] = {
            "steps": self._step_id,
            "scheduler": self.scheduler.get_stats(),
            "allocator": self.allocator.get_stats(),
            "active_streams": self.streamer.num_active,
        }
        if self.spec is not None:
            stats["spec_decode"] = self.spec.controller.get_metrics()
        return stats
