"""Tests for Sequence and SequenceGroup run-state."""

from __future__ import annotations

from conftest import make_request
from mlx_paged_engine.sequence import SequenceGroup, SequenceStatus
from mlx_paged_engine.types import FinishReason, TokenLogprob


def _group(n: int = 1, **kwargs) -> SequenceGroup:
    return SequenceGroup(make_request(n=n, **kwargs), seed=5, max_new_tokens=8)


class TestSequence:
    def test_token_accounting(self):
        seq = _group().seqs[0]
        assert seq.seq_id == "req-1-0"
        assert seq.num_tokens == 3
        assert seq.is_prefill
        seq.num_computed_tokens = 3
        seq.append_token(9)
        assert seq.token_ids == [1, 2, 3, 9]
        assert seq.last_token_id == 9
        assert seq.num_uncomputed_tokens == 1
        assert not seq.is_prefill

    def test_recompute_keeps_output(self):
        seq = _group().seqs[0]
        seq.num_computed_tokens = 3
        seq.num_draft_computed = 2
        seq.append_token(9)
        seq.reset_for_recompute()
        assert seq.num_computed_tokens == 0
        assert seq.num_draft_computed == 0
        assert seq.output_token_ids == [9]
        assert seq.is_prefill

    def test_logprobs_accumulate(self):
        seq = _group().seqs[0]
        seq.append_token(4, TokenLogprob(token_id=4, logprob=-0.5))
        seq.append_token(5, TokenLogprob(token_id=5, logprob=-1.0))
        assert seq.cumulative_logprob == -1.5
        assert len(seq.output_logprobs) == 2

    def test_fork_copies_state(self):
        parent = _group().seqs[0]
        parent.num_computed_tokens = 3
        child = parent.fork(2, seed=7)
        assert child.seq_id == "req-1-2"
        assert child.seed == 7
        assert child.token_ids == parent.token_ids
        assert child.num_computed_tokens == 3
        child.append_token(1)
        assert parent.output_token_ids == []


class TestSequenceGroup:
    def test_needs_fork(self):
        group = _group(n=3)
        assert group.needs_fork
        assert not group.is_finished()
        assert group.seed_for(2) == 7

    def test_priority_key_orders_by_priority_then_arrival(self):
        low = _group(priority=0)
        high = _group(priority=5)
        later = _group(priority=0)
        ordered = sorted([later, low, high], key=SequenceGroup.priority_key)
        assert ordered == [high, low, later]

    def test_set_status_records_start(self):
        group = _group()
        group.set_status(SequenceStatus.RUNNING)
        assert group.seqs[0].status == SequenceStatus.RUNNING
        assert group.started_at > 0

    def test_finish_reasons_and_usage(self):
        group = _group()
        seq = group.seqs[0]
        seq.append_token(4)
        seq.append_token(5)
        seq.finish(FinishReason.LENGTH)
        assert group.is_finished()
        assert group.finish_reasons() == [FinishReason.LENGTH]
        usage = group.usage()
        assert usage.prompt_tokens == 3
        assert usage.completion_tokens == 2
        assert usage.total_tokens == 5
