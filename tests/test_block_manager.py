"""Tests for the paged KV block allocator.

Covers:
- BlockPool free queue and exhaustion
- allocate / free round trip and all-or-nothing allocation
- append_slot growth and idempotence
- fork ref counts and copy-on-write on the first divergent write
- swap out / in preserving shared blocks
- speculative lookahead reserve / release
- admission status (OK / LATER / NEVER) and invariant checking
"""

from __future__ import annotations

import subprocess
import sys
import textwrap

import pytest

from conftest import BLOCK_SIZE, make_allocator, make_pipeline
from mlx_paged_engine.block_manager import (
    AllocStatus,
    BlockPool,
    Device,
    OutOfBlocksError,
)
from mlx_paged_engine.sequence import Sequence
from mlx_paged_engine.types import (
    BatchDescriptor,
    BatchEntry,
    BlockOpKind,
    FinishReason,
    SamplingParams,
    StepMode,
)


def _seq(request_id: str = "r", num_tokens: int = 3, index: int = 0) -> Sequence:
    return Sequence(
        request_id=request_id,
        index=index,
        prompt_token_ids=list(range(1, num_tokens + 1)),
        sampling=SamplingParams(),
        seed=0,
    )


# ---------------------------------------------------------------------------
# BlockPool
# ---------------------------------------------------------------------------


class TestBlockPool:
    def test_pool_init(self):
        pool = BlockPool(num_blocks=6, device=Device.DEVICE)
        assert len(pool.blocks) == 6
        assert pool.num_free == 6
        assert pool.num_used == 0

    def test_get_free_block_sets_owner(self):
        pool = BlockPool(num_blocks=2, device=Device.DEVICE)
        block = pool.get_free_block()
        assert block.ref_count == 1
        assert not pool.is_free(block.block_id)
        assert pool.num_free == 1

    def test_exhaustion_raises(self):
        pool = BlockPool(num_blocks=1, device=Device.HOST)
        pool.get_free_block()
        with pytest.raises(OutOfBlocksError):
            pool.get_free_block()

    def test_return_block(self):
        pool = BlockPool(num_blocks=2, device=Device.DEVICE)
        block = pool.get_free_block()
        pool.return_block(block.block_id)
        assert pool.is_free(block.block_id)
        assert pool.num_free == 2

    def test_double_return_ignored(self):
        pool = BlockPool(num_blocks=2, device=Device.DEVICE)
        block = pool.get_free_block()
        pool.return_block(block.block_id)
        pool.return_block(block.block_id)
        assert pool.num_free == 2
        assert len(pool.free_queue) == 2

    def test_negative_size_rejected(self):
        with pytest.raises(ValueError):
            BlockPool(num_blocks=-1, device=Device.DEVICE)


# ---------------------------------------------------------------------------
# Allocation
# ---------------------------------------------------------------------------


class TestAllocate:
    def test_blocks_needed(self, allocator):
        assert allocator.blocks_needed(0) == 0
        assert allocator.blocks_needed(1) == 1
        assert allocator.blocks_needed(BLOCK_SIZE) == 1
        assert allocator.blocks_needed(BLOCK_SIZE + 1) == 2

    def test_allocate_covers_prompt(self, allocator):
        seq = _seq(num_tokens=BLOCK_SIZE + 1)
        ids = allocator.allocate(seq)
        assert len(ids) == 2
        assert seq.block_table.block_ids == ids
        assert allocator.num_free_device_blocks == 8 - 2
        allocator.check_invariants([seq])

    def test_round_trip_restores_free_list(self, allocator):
        before = set(allocator.device_pool.free_queue)
        seqs = [_seq(f"r{i}", num_tokens=5) for i in range(3)]
        for seq in seqs:
            allocator.allocate(seq)
        for seq in seqs:
            allocator.free(seq)
        assert set(allocator.device_pool.free_queue) == before
        assert allocator.num_free_device_blocks == 8
        allocator.check_invariants(seqs)

    def test_all_or_nothing(self):
        allocator = make_allocator(num_device_blocks=2)
        seq = _seq(num_tokens=3 * BLOCK_SIZE)
        with pytest.raises(OutOfBlocksError):
            allocator.allocate(seq)
        assert allocator.num_free_device_blocks == 2
        assert seq.block_table.block_ids == []

    def test_allocate_twice_rejected(self, allocator):
        seq = _seq()
        allocator.allocate(seq)
        with pytest.raises(ValueError):
            allocator.allocate(seq)

    def test_status(self):
        allocator = make_allocator(num_device_blocks=4)
        assert allocator.can_allocate(4 * BLOCK_SIZE) == AllocStatus.OK
        assert allocator.can_allocate(4 * BLOCK_SIZE + 1) == AllocStatus.NEVER
        allocator.allocate(_seq(num_tokens=3 * BLOCK_SIZE))
        assert allocator.can_allocate(2 * BLOCK_SIZE) == AllocStatus.LATER
        assert allocator.can_allocate(BLOCK_SIZE) == AllocStatus.OK
        assert allocator.status_for_blocks(1, watermark_blocks=1) == AllocStatus.LATER

    def test_watermark_shrinks_admissible_size(self):
        allocator = make_allocator(num_device_blocks=4)
        assert allocator.status_for_blocks(3, watermark_blocks=1) == AllocStatus.OK
        assert allocator.status_for_blocks(4, watermark_blocks=1) == AllocStatus.NEVER
        assert allocator.can_allocate(4 * BLOCK_SIZE, watermark_blocks=1) == AllocStatus.NEVER


class TestAppendSlot:
    def test_reuses_partial_block(self, allocator):
        seq = _seq(num_tokens=2)
        allocator.allocate(seq)
        seq.append_token(7)
        slot = allocator.append_slot(seq)
        assert len(seq.block_table) == 1
        assert slot == seq.block_table.block_ids[0] * BLOCK_SIZE + 2

    def test_takes_new_block_at_boundary(self, allocator):
        seq = _seq(num_tokens=BLOCK_SIZE)
        allocator.allocate(seq)
        seq.append_token(7)
        allocator.append_slot(seq)
        assert len(seq.block_table) == 2
        allocator.check_invariants([seq])

    def test_idempotent(self, allocator):
        seq = _seq(num_tokens=BLOCK_SIZE)
        allocator.allocate(seq)
        seq.append_token(7)
        first = allocator.append_slot(seq)
        free = allocator.num_free_device_blocks
        assert allocator.append_slot(seq) == first
        assert allocator.num_free_device_blocks == free

    def test_out_of_blocks_leaves_table(self):
        allocator = make_allocator(num_device_blocks=1)
        seq = _seq(num_tokens=BLOCK_SIZE)
        allocator.allocate(seq)
        seq.append_token(7)
        with pytest.raises(OutOfBlocksError):
            allocator.append_slot(seq)
        assert len(seq.block_table) == 1

    def test_slot_mapping(self, allocator):
        seq = _seq(num_tokens=BLOCK_SIZE + 2)
        b0, b1 = allocator.allocate(seq)
        slots = allocator.get_slot_mapping(seq, BLOCK_SIZE - 1, BLOCK_SIZE + 1)
        assert slots == [b0 * BLOCK_SIZE + BLOCK_SIZE - 1, b1 * BLOCK_SIZE]
        with pytest.raises(ValueError):
            allocator.get_slot_mapping(seq, 0, 2 * BLOCK_SIZE + 1)


# ---------------------------------------------------------------------------
# Fork / copy-on-write
# ---------------------------------------------------------------------------


class TestFork:
    def test_fork_shares_blocks(self, allocator):
        parent = _seq(num_tokens=6)
        allocator.allocate(parent)
        child = parent.fork(1, seed=1)
        allocator.fork(parent, child)
        assert child.block_table.block_ids == parent.block_table.block_ids
        for block_id in parent.block_table.block_ids:
            assert allocator.device_pool.blocks[block_id].ref_count == 2
        allocator.check_invariants([parent, child])

    def test_free_child_decrements_once(self, allocator):
        parent = _seq(num_tokens=6)
        allocator.allocate(parent)
        child = parent.fork(1, seed=1)
        allocator.fork(parent, child)
        allocator.free(child)
        for block_id in parent.block_table.block_ids:
            assert allocator.device_pool.blocks[block_id].ref_count == 1
        allocator.free(parent)
        assert allocator.num_free_device_blocks == 8
        allocator.check_invariants([parent, child])

    def test_copy_on_write(self, allocator):
        parent = _seq(num_tokens=6)
        allocator.allocate(parent)
        child = parent.fork(1, seed=1)
        allocator.fork(parent, child)
        allocator.pop_pending_ops()

        shared_last = parent.block_table.block_ids[-1]
        child.append_token(9)
        allocator.append_slot(child)

        assert child.block_table.block_ids[0] == parent.block_table.block_ids[0]
        assert child.block_table.block_ids[-1] != shared_last
        assert parent.block_table.block_ids[-1] == shared_last
        assert allocator.device_pool.blocks[shared_last].ref_count == 1

        ops = allocator.pop_pending_ops().block_ops
        assert [op.kind for op in ops] == [BlockOpKind.COPY]
        assert ops[0].src == shared_last
        assert ops[0].dst == child.block_table.block_ids[-1]
        allocator.check_invariants([parent, child])

    def test_fork_recorded_for_pipelines(self, allocator):
        parent = _seq(num_tokens=3)
        allocator.allocate(parent)
        child = parent.fork(1, seed=1)
        allocator.fork(parent, child)
        allocator.free(child)
        pending = allocator.pop_pending_ops()
        assert pending.forks == [(parent.seq_id, child.seq_id)]
        assert pending.released == [child.seq_id]

    def test_branches_diverge_without_cross_mutation(self, allocator):
        """Both branches keep the shared prefix; each sees only its own write."""
        pipeline = make_pipeline()
        parent = _seq(num_tokens=6)
        allocator.allocate(parent)
        pipeline.run_batch(
            BatchDescriptor(
                step_id=1,
                entries=[
                    BatchEntry(
                        seq_id=parent.seq_id,
                        mode=StepMode.PREFILL,
                        input_ids=parent.token_ids,
                        start_pos=0,
                        block_table=list(parent.block_table.block_ids),
                        slot_mapping=allocator.get_slot_mapping(parent, 0, 6),
                    )
                ],
            )
        )
        child = parent.fork(1, seed=1)
        allocator.fork(parent, child)

        entries = []
        for seq, token in ((parent, 40), (child, 41)):
            seq.append_token(token)
            allocator.append_slot(seq)
            entries.append(
                BatchEntry(
                    seq_id=seq.seq_id,
                    mode=StepMode.DECODE,
                    input_ids=[token],
                    start_pos=6,
                    block_table=list(seq.block_table.block_ids),
                    slot_mapping=allocator.get_slot_mapping(seq, 6, 7),
                )
            )
        pending = allocator.pop_pending_ops()
        pipeline.run_batch(
            BatchDescriptor(step_id=2, entries=entries, block_ops=pending.block_ops)
        )

        parent_ctx = pipeline.read_context(parent.block_table.block_ids, 7)
        child_ctx = pipeline.read_context(child.block_table.block_ids, 7)
        assert parent_ctx[:6] == child_ctx[:6] == [1, 2, 3, 4, 5, 6]
        assert parent_ctx[6] == 40
        assert child_ctx[6] == 41


# ---------------------------------------------------------------------------
# Swapping
# ---------------------------------------------------------------------------


class TestSwap:
    def test_swap_round_trip_preserves_sharing(self, allocator):
        parent = _seq(num_tokens=6)
        allocator.allocate(parent)
        child = parent.fork(1, seed=1)
        allocator.fork(parent, child)
        group = [parent, child]

        assert allocator.can_swap_out(group)
        mapping = allocator.swap_out(group)
        assert len(mapping) == 2  # Shared blocks copied once
        assert allocator.num_free_device_blocks == 8
        assert parent.block_table.device == Device.HOST
        assert parent.block_table.block_ids == child.block_table.block_ids
        allocator.check_invariants(group)

        assert allocator.can_swap_in(group)
        allocator.swap_in(group)
        assert parent.block_table.device == Device.DEVICE
        assert parent.block_table.block_ids == child.block_table.block_ids
        for block_id in parent.block_table.block_ids:
            assert allocator.device_pool.blocks[block_id].ref_count == 2
        assert allocator.num_free_host_blocks == 8

        kinds = [op.kind for op in allocator.pop_pending_ops().block_ops]
        assert kinds == [BlockOpKind.SWAP_OUT] * 2 + [BlockOpKind.SWAP_IN] * 2
        allocator.check_invariants(group)

    def test_no_host_space(self):
        allocator = make_allocator(num_device_blocks=4, num_host_blocks=0)
        seq = _seq(num_tokens=3)
        allocator.allocate(seq)
        assert not allocator.can_swap_out([seq])
        with pytest.raises(OutOfBlocksError):
            allocator.swap_out([seq])

    def test_append_slot_requires_device(self, allocator):
        seq = _seq(num_tokens=3)
        allocator.allocate(seq)
        allocator.swap_out([seq])
        seq.append_token(5)
        with pytest.raises(ValueError):
            allocator.append_slot(seq)

    def test_swap_data_survives_block_reuse(self):
        """Swapped-out contents come back even if the device block was reused."""
        allocator = make_allocator(num_device_blocks=1, num_host_blocks=1)
        pipeline = make_pipeline()
        a, b = _seq("a", num_tokens=2), _seq("b", num_tokens=2)

        def write(seq, step_id, ops=()):
            return pipeline.run_batch(
                BatchDescriptor(
                    step_id=step_id,
                    entries=[
                        BatchEntry(
                            seq_id=seq.seq_id,
                            mode=StepMode.PREFILL,
                            input_ids=seq.token_ids,
                            start_pos=0,
                            block_table=list(seq.block_table.block_ids),
                            slot_mapping=allocator.get_slot_mapping(seq, 0, seq.num_tokens),
                        )
                    ],
                    block_ops=list(ops),
                )
            )

        allocator.allocate(a)
        write(a, 1)
        allocator.swap_out([a])
        b.prompt_token_ids = (30, 31)
        allocator.allocate(b)
        write(b, 2, allocator.pop_pending_ops().block_ops)

        allocator.free(b)
        allocator.swap_in([a])
        pipeline.run_batch(
            BatchDescriptor(step_id=3, block_ops=allocator.pop_pending_ops().block_ops)
        )
        assert pipeline.read_context(a.block_table.block_ids, 2) == [1, 2]


# ---------------------------------------------------------------------------
# Lookahead
# ---------------------------------------------------------------------------


class TestLookahead:
    def test_reserve_and_release(self, allocator):
        seq = _seq(num_tokens=3)
        allocator.allocate(seq)
        slots = allocator.reserve_lookahead(seq, 4)
        assert len(slots) == 4
        assert seq.block_table.num_lookahead == 4
        assert len(seq.block_table) == 2
        allocator.check_invariants([seq])

        assert allocator.release_lookahead(seq) == 1
        assert len(seq.block_table) == 1
        assert seq.block_table.num_lookahead == 0
        allocator.check_invariants([seq])

    def test_accepted_tokens_keep_their_block(self, allocator):
        seq = _seq(num_tokens=3)
        allocator.allocate(seq)
        allocator.reserve_lookahead(seq, 4)
        for token in (10, 11):
            seq.append_token(token)
            allocator.append_slot(seq)
        assert allocator.release_lookahead(seq) == 0
        assert len(seq.block_table) == 2
        allocator.check_invariants([seq])

    def test_reserve_copies_shared_block(self, allocator):
        parent = _seq(num_tokens=3)
        allocator.allocate(parent)
        child = parent.fork(1, seed=1)
        allocator.fork(parent, child)
        allocator.pop_pending_ops()
        allocator.reserve_lookahead(child, 1)
        ops = allocator.pop_pending_ops().block_ops
        assert [op.kind for op in ops] == [BlockOpKind.COPY]
        assert child.block_table.block_ids[0] != parent.block_table.block_ids[0]

    def test_reserve_out_of_blocks_then_release(self):
        allocator = make_allocator(num_device_blocks=2)
        seq = _seq(num_tokens=3)
        allocator.allocate(seq)
        with pytest.raises(OutOfBlocksError):
            allocator.reserve_lookahead(seq, 2 * BLOCK_SIZE)
        allocator.release_lookahead(seq)
        assert len(seq.block_table) == 1
        assert allocator.num_free_device_blocks == 1
        allocator.check_invariants([seq])


# ---------------------------------------------------------------------------
# Invariants
# ---------------------------------------------------------------------------


class TestInvariants:
    def test_detects_ref_count_drift(self, allocator):
        seq = _seq(num_tokens=3)
        allocator.allocate(seq)
        allocator.device_pool.blocks[seq.block_table.block_ids[0]].ref_count = 2
        with pytest.raises(AssertionError):
            allocator.check_invariants([seq])

    def test_detects_finished_holder(self, allocator):
        seq = _seq(num_tokens=3)
        allocator.allocate(seq)
        seq.finish(FinishReason.STOP)
        with pytest.raises(AssertionError):
            allocator.check_invariants([seq])

    def test_reports_violation(self, allocator):
        seq = _seq(num_tokens=3)
        allocator.allocate(seq)
        allocator.device_pool.blocks[seq.block_table.block_ids[0]].ref_count = 2
        with pytest.raises(AssertionError, match="ref_count 2 != 1 table references"):
            allocator.check_invariants([seq])

    def test_checks_run_with_optimizations(self):
        script = textwrap.dedent(
            """
            from mlx_paged_engine.block_manager import BlockAllocator
            from mlx_paged_engine.sequence import Sequence
            from mlx_paged_engine.types import SamplingParams

            allocator = BlockAllocator(4, 8, 8)
            seq = Sequence(request_id="r", index=0, prompt_token_ids=[1, 2, 3],
                           sampling=SamplingParams(), seed=0)
            allocator.allocate(seq)
            allocator.device_pool.blocks[seq.block_table.block_ids[0]].ref_count = 2
            try:
                allocator.check_invariants([seq])
            except AssertionError:
                raise SystemExit(0)
            raise SystemExit(1)
            """
        )
        proc = subprocess.run([sys.executable, "-O", "-c", script], capture_output=True, text=True)
        assert proc.returncode == 0, proc.stderr

    def test_stats(self, allocator):
        seq = _seq(num_tokens=5)
        allocator.allocate(seq)
        stats = allocator.get_stats()
        assert stats["num_device_blocks"] == 8
        assert stats["free_device_blocks"] == 6
        assert stats["live_sequences"] == 1
