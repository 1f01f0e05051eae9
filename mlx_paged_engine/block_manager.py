"""Paged KV cache block allocator.

Implements a vLLM-style block manager over two tiers:
- Pre-allocated device and host block pools with free queues
- Per-block ref counts for copy-on-write sharing between forked sequences
- Swap out/in of whole sequence groups, preserving sharing across the move
- Lookahead slots for speculative verification, released on rollback

The allocator only does bookkeeping. Data movement is described by an
ordered list of ``BlockOp`` records that the engine hands to the pipeline
with the next batch. Callers serialize access (the engine holds its lock
around every call).
"""

from __future__ import annotations

import enum
import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Iterable, Optional, Union

from mlx_paged_engine.sequence import BlockTable, Device, Sequence
from mlx_paged_engine.types import BlockOp, BlockOpKind

logger = logging.getLogger(__name__)

__all__ = [
    "AllocStatus",
    "BlockAllocator",
    "BlockPool",
    "Device",
    "OutOfBlocksError",
    "PendingOps",
    "PhysicalBlock",
]


class OutOfBlocksError(Exception):
    """Raised when a pool has no free block for a request."""


class AllocStatus(enum.Enum):
    OK = "ok"  # Fits now
    LATER = "later"  # Fits once other sequences release blocks
    NEVER = "never"  # Larger than the device budget less the watermark


def _check(condition: bool, message: str) -> None:
    # Explicit raise: check_invariants must also run under python -O
    if not condition:
        raise AssertionError(message)


@dataclass
class PhysicalBlock:
    block_id: int
    device: Device
    ref_count: int = 0
    num_filled: int = 0


class BlockPool:
    """Pre-allocated pool of PhysicalBlock objects with a free queue.

    All blocks are created at init time. The free queue tracks which
    block_ids are available for allocation.
    """

    def __init__(self, num_blocks: int, device: Device) -> None:
        if num_blocks < 0:
            raise ValueError(f"num_blocks must be >= 0, got {num_blocks}")

        self.num_blocks = num_blocks
        self.device = device
        self.blocks: list[PhysicalBlock] = [
            PhysicalBlock(block_id=i, device=device) for i in range(num_blocks)
        ]
        self.free_queue: deque[int] = deque(range(num_blocks))
        self._free_set: set[int] = set(range(num_blocks))

    def get_free_block(self) -> PhysicalBlock:
        """Take a free block and give it one owner.

        Raises:
            OutOfBlocksError: If no free blocks are available.
        """
        if not self.free_queue:
            raise OutOfBlocksError(
                f"{self.device.value} pool exhausted: all {self.num_blocks} blocks are in use"
            )
        block_id = self.free_queue.popleft()
        self._free_set.discard(block_id)
        block = self.blocks[block_id]
        block.ref_count = 1
        block.num_filled = 0
        return block

    def return_block(self, block_id: int) -> None:
        block = self.blocks[block_id]
        block.ref_count = 0
        block.num_filled = 0
        if block_id in self._free_set:
            logger.warning(
                "BlockPool(%s): double-return of block %d ignored",
                self.device.value, block_id,
            )
            return
        self._free_set.add(block_id)
        self.free_queue.append(block_id)

    def is_free(self, block_id: int) -> bool:
        return block_id in self._free_set

    @property
    def num_free(self) -> int:
        """Number of free blocks available."""
        return len(self.free_queue)

    @property
    def num_used(self) -> int:
        return self.num_blocks - len(self.free_queue)


@dataclass
class PendingOps:
    """Work accumulated since the last batch, in recording order."""

    block_ops: list[BlockOp] = field(default_factory=list)
    forks: list[tuple[str, str]] = field(default_factory=list)
    released: list[str] = field(default_factory=list)


class BlockAllocator:
    """Maps sequences onto fixed-size KV blocks in a device and a host pool.

    A sequence's ``block_table`` lists the block ids holding its tokens in
    order; token at position ``p`` lives in slot
    ``block_ids[p // block_size] * block_size + p % block_size``. A block
    referenced by several tables (after ``fork``) is never written in place:
    ``append_slot`` and ``reserve_lookahead`` copy it first.

    Args:
        block_size: Tokens per block.
        num_device_blocks: Device tier budget.
        num_host_blocks: Host (swap) tier budget. 0 disables swapping.
    """

    def __init__(self, block_size: int, num_device_blocks: int, num_host_blocks: int = 0) -> None:
        if block_size < 1:
            raise ValueError(f"block_size must be >= 1, got {block_size}")
        if num_device_blocks < 1:
            raise ValueError(f"num_device_blocks must be >= 1, got {num_device_blocks}")

        self.block_size = block_size
        self.device_pool = BlockPool(num_device_blocks, Device.DEVICE)
        self.host_pool = BlockPool(num_host_blocks, Device.HOST)

        # Live tables, keyed by seq_id
        self._seqs: dict[str, Sequence] = {}
        self._pending = PendingOps()
        self._stats = {
            "allocations": 0,
            "frees": 0,
            "forks": 0,
            "cow_copies": 0,
            "swap_outs": 0,
            "swap_ins": 0,
            "blocks_swapped_out": 0,
            "blocks_swapped_in": 0,
            "lookahead_released": 0,
        }

    # --- Helpers ---

    def _pool(self, device: Device) -> BlockPool:
        return self.device_pool if device == Device.DEVICE else self.host_pool

    def blocks_needed(self, num_tokens: int) -> int:
        return -(-num_tokens // self.block_size)

    def _slot(self, table: BlockTable, pos: int) -> int:
        return table.block_ids[pos // self.block_size] * self.block_size + pos % self.block_size

    def _release(self, pool: BlockPool, block_id: int) -> None:
        block = pool.blocks[block_id]
        if block.ref_count <= 0:
            logger.warning(
                "Attempted to free %s block %d with ref_count=%d",
                pool.device.value, block_id, block.ref_count,
            )
            return
        block.ref_count -= 1
        if block.ref_count == 0:
            pool.return_block(block_id)
        logger.debug(
            "Released %s block %d (ref_count now %d)",
            pool.device.value, block_id, block.ref_count,
        )

    def _ensure_writable(self, table: BlockTable, idx: int) -> None:
        """Extend ``table`` to index ``idx`` and copy a shared block at ``idx``.

        Raises:
            OutOfBlocksError: If a new or copied block cannot be obtained.
        """
        while len(table.block_ids) <= idx:
            block = self.device_pool.get_free_block()
            table.block_ids.append(block.block_id)
            self._stats["allocations"] += 1
        block_id = table.block_ids[idx]
        block = self.device_pool.blocks[block_id]
        if block.ref_count > 1:
            new_block = self.device_pool.get_free_block()
            new_block.num_filled = block.num_filled
            block.ref_count -= 1
            table.block_ids[idx] = new_block.block_id
            self._pending.block_ops.append(
                BlockOp(BlockOpKind.COPY, block_id, new_block.block_id)
            )
            self._stats["cow_copies"] += 1
            logger.debug(
                "Copy-on-write: block %d -> %d (ref_count of %d now %d)",
                block_id, new_block.block_id, block_id, block.ref_count,
            )

    # --- Allocation ---

    def status_for_blocks(self, num_blocks: int, watermark_blocks: int = 0) -> AllocStatus:
        # The watermark stays free even on an idle device
        if num_blocks > self.device_pool.num_blocks - watermark_blocks:
            return AllocStatus.NEVER
        if self.device_pool.num_free - num_blocks >= watermark_blocks:
            return AllocStatus.OK
        return AllocStatus.LATER

    def can_allocate(
        self, seq_or_num_tokens: Union[Sequence, int], watermark_blocks: int = 0
    ) -> AllocStatus:
        """Whether a prompt of this many tokens can get its blocks.

        ``NEVER`` means the prompt exceeds the device budget less the
        watermark and must be rejected; ``LATER`` means it fits once other
        sequences finish.
        """
        if isinstance(seq_or_num_tokens, Sequence):
            num_tokens = seq_or_num_tokens.num_tokens
        else:
            num_tokens = seq_or_num_tokens
        return self.status_for_blocks(self.blocks_needed(num_tokens), watermark_blocks)

    def allocate(self, seq: Sequence, num_blocks: Optional[int] = None) -> list[int]:
        """Give ``seq`` fresh device blocks covering its tokens.

        All-or-nothing: on failure no block is reserved.

        Raises:
            OutOfBlocksError: If the device pool cannot cover the request.
            ValueError: If the sequence already holds blocks.
        """
        table = seq.block_table
        if table.block_ids:
            raise ValueError(f"{seq.seq_id} already holds {len(table)} blocks")
        if num_blocks is None:
            num_blocks = self.blocks_needed(seq.num_tokens)
        if num_blocks > self.device_pool.num_free:
            raise OutOfBlocksError(
                f"{seq.seq_id} needs {num_blocks} blocks, "
                f"{self.device_pool.num_free} free"
            )
        table.block_ids = [self.device_pool.get_free_block().block_id for _ in range(num_blocks)]
        table.device = Device.DEVICE
        table.num_lookahead = 0
        self._seqs[seq.seq_id] = seq
        self._stats["allocations"] += num_blocks
        logger.debug("Allocated %d blocks to %s: %s", num_blocks, seq.seq_id, table.block_ids)
        return list(table.block_ids)

    def append_slot(self, seq: Sequence) -> int:
        """Make sure the newest token of ``seq`` has a writable slot.

        Reuses the last block when it has room (or a lookahead slot already
        covers the position), takes one new block otherwise, and copies the
        block first if it is shared. Calling it again without appending a
        token is a no-op.

        Returns:
            The physical slot of the newest token.

        Raises:
            OutOfBlocksError: If a new or copied block is needed and the
                device pool is empty. The table is unchanged.
        """
        table = seq.block_table
        if table.device != Device.DEVICE:
            raise ValueError(f"{seq.seq_id} is not resident on the device")
        pos = seq.num_tokens - 1
        idx = pos // self.block_size
        self._ensure_writable(table, idx)
        block = self.device_pool.blocks[table.block_ids[idx]]
        block.num_filled = max(block.num_filled, pos % self.block_size + 1)
        self._seqs[seq.seq_id] = seq
        return self._slot(table, pos)

    def fork(self, parent: Sequence, child: Sequence) -> None:
        """Share every block of ``parent`` with ``child`` (no data copy)."""
        src = parent.block_table
        pool = self._pool(src.device)
        for block_id in src.block_ids:
            pool.blocks[block_id].ref_count += 1
        child.block_table = BlockTable(block_ids=list(src.block_ids), device=src.device)
        self._seqs[child.seq_id] = child
        self._pending.forks.append((parent.seq_id, child.seq_id))
        self._stats["forks"] += 1
        logger.debug(
            "Forked %s -> %s sharing %d blocks", parent.seq_id, child.seq_id, len(src)
        )

    def free(self, seq: Sequence) -> None:
        """Drop one reference to each block of ``seq`` and clear its table."""
        table = seq.block_table
        pool = self._pool(table.device)
        for block_id in table.block_ids:
            self._release(pool, block_id)
        if table.block_ids:
            self._stats["frees"] += 1
        table.block_ids = []
        table.device = Device.DEVICE
        table.num_lookahead = 0
        if self._seqs.pop(seq.seq_id, None) is not None:
            self._pending.released.append(seq.seq_id)

    # --- Speculative lookahead ---

    def reserve_lookahead(self, seq: Sequence, k: int) -> list[int]:
        """Reserve writable slots for ``k`` positions after the last token.

        Slots reserved here are consumed by later ``append_slot`` calls.
        Whatever is left must be given back with ``release_lookahead``
        before the step ends, including after OutOfBlocksError.

        Returns:
            Slots for positions ``num_tokens .. num_tokens + k - 1``.
        """
        table = seq.block_table
        start = seq.num_tokens
        slots = []
        for pos in range(start, start + k):
            self._ensure_writable(table, pos // self.block_size)
            table.num_lookahead = pos - start + 1
            slots.append(self._slot(table, pos))
        return slots

    def release_lookahead(self, seq: Sequence) -> int:
        """Free whole blocks past the last token. Returns how many were freed."""
        table = seq.block_table
        keep = self.blocks_needed(seq.num_tokens)
        extra = table.block_ids[keep:]
        pool = self._pool(table.device)
        for block_id in extra:
            self._release(pool, block_id)
        del table.block_ids[keep:]
        table.num_lookahead = 0
        self._stats["lookahead_released"] += len(extra)
        return len(extra)

    # --- Swapping ---

    def _distinct_blocks(self, seqs: Iterable[Sequence]) -> set[int]:
        ids: set[int] = set()
        for seq in seqs:
            ids.update(seq.block_table.block_ids)
        return ids

    def can_swap_out(self, seqs: Iterable[Sequence]) -> bool:
        seqs = list(seqs)
        if any(s.block_table.device != Device.DEVICE for s in seqs):
            return False
        return len(self._distinct_blocks(seqs)) <= self.host_pool.num_free

    def can_swap_in(self, seqs: Iterable[Sequence], watermark_blocks: int = 0) -> bool:
        seqs = list(seqs)
        if any(s.block_table.device != Device.HOST for s in seqs):
            return False
        needed = len(self._distinct_blocks(seqs))
        return self.device_pool.num_free - needed >= watermark_blocks

    def _move(self, seqs: list[Sequence], src_dev: Device, dst_dev: Device, kind: BlockOpKind) -> list[tuple[int, int]]:
        src_pool, dst_pool = self._pool(src_dev), self._pool(dst_dev)
        mapping: dict[int, int] = {}
        for seq in seqs:
            table = seq.block_table
            if table.device != src_dev:
                raise ValueError(f"{seq.seq_id} is not on {src_dev.value}")
            new_ids = []
            for block_id in table.block_ids:
                if block_id in mapping:
                    dst_pool.blocks[mapping[block_id]].ref_count += 1
                else:
                    dst = dst_pool.get_free_block()
                    dst.num_filled = src_pool.blocks[block_id].num_filled
                    mapping[block_id] = dst.block_id
                    self._pending.block_ops.append(BlockOp(kind, block_id, dst.block_id))
                new_ids.append(mapping[block_id])
                self._release(src_pool, block_id)
            table.block_ids = new_ids
            table.device = dst_dev
            table.num_lookahead = 0
            self._seqs[seq.seq_id] = seq
        return list(mapping.items())

    def swap_out(self, seqs: Iterable[Sequence]) -> list[tuple[int, int]]:
        """Move the device blocks of ``seqs`` to the host tier.

        Blocks shared between the sequences are copied once and stay shared.

        Returns:
            The (device_block, host_block) mapping.

        Raises:
            OutOfBlocksError: If the host tier is too small; check with
                ``can_swap_out`` first.
        """
        seqs = list(seqs)
        if not self.can_swap_out(seqs):
            raise OutOfBlocksError(
                f"Host tier cannot hold {len(self._distinct_blocks(seqs))} blocks "
                f"({self.host_pool.num_free} free)"
            )
        mapping = self._move(seqs, Device.DEVICE, Device.HOST, BlockOpKind.SWAP_OUT)
        self._stats["swap_outs"] += 1
        self._stats["blocks_swapped_out"] += len(mapping)
        logger.debug("Swapped out %s: %d blocks", [s.seq_id for s in seqs], len(mapping))
        return mapping

    def swap_in(self, seqs: Iterable[Sequence]) -> list[tuple[int, int]]:
        """Move the host blocks of ``seqs`` back to the device tier.

        Returns:
            The (host_block, device_block) mapping.
        """
        seqs = list(seqs)
        needed = len(self._distinct_blocks(seqs))
        if needed > self.device_pool.num_free:
            raise OutOfBlocksError(
                f"Device tier cannot hold {needed} blocks ({self.device_pool.num_free} free)"
            )
        mapping = self._move(seqs, Device.HOST, Device.DEVICE, BlockOpKind.SWAP_IN)
        self._stats["swap_ins"] += 1
        self._stats["blocks_swapped_in"] += len(mapping)
        logger.debug("Swapped in %s: %d blocks", [s.seq_id for s in seqs], len(mapping))
        return mapping

    # --- Executor hand-off ---

    def get_slot_mapping(self, seq: Sequence, start: int, end: int) -> list[int]:
        """Physical slots for token positions ``start .. end - 1``."""
        table = seq.block_table
        if end > len(table.block_ids) * self.block_size or start < 0:
            raise ValueError(
                f"{seq.seq_id}: positions [{start}, {end}) not covered by "
                f"{len(table.block_ids)} blocks"
            )
        return [self._slot(table, pos) for pos in range(start, end)]

    def pop_pending_ops(self) -> PendingOps:
        pending = self._pending
        self._pending = PendingOps()
        return pending

    # --- Introspection ---

    @property
    def num_free_device_blocks(self) -> int:
        return self.device_pool.num_free

    @property
    def num_free_host_blocks(self) -> int:
        return self.host_pool.num_free

    @property
    def num_used_device_blocks(self) -> int:
        return self.device_pool.num_used

    def get_stats(self) -> dict[str, int]:
        stats = dict(self._stats)
        stats.update(
            num_device_blocks=self.device_pool.num_blocks,
            num_host_blocks=self.host_pool.num_blocks,
            free_device_blocks=self.device_pool.num_free,
            free_host_blocks=self.host_pool.num_free,
            live_sequences=len(self._seqs),
        )
        return stats

    def check_invariants(self, sequences: Optional[Iterable[Sequence]] = None) -> None:
        """Assert the block bookkeeping is consistent.

        Checks that every ref count equals the number of live tables
        referencing the block, that exactly the unreferenced blocks are on
        the free lists, that tables cover their sequence's tokens exactly
        (plus any reserved lookahead), and that finished sequences hold
        nothing.

        Raises:
            AssertionError: Describing the first violation found.
        """
        seqs = list(self._seqs.values()) if sequences is None else list(sequences)
        refs = {Device.DEVICE: {}, Device.HOST: {}}
        for seq in seqs:
            table = seq.block_table
            if seq.is_finished():
                _check(not table.block_ids, f"finished {seq.seq_id} holds blocks {table.block_ids}")
                continue
            if table.block_ids and table.device == Device.HOST:
                # Tokens committed after the swap get their slot at swap-in
                low = self.blocks_needed(seq.num_computed_tokens)
                high = self.blocks_needed(seq.num_tokens)
                _check(
                    low <= len(table.block_ids) <= high,
                    f"{seq.seq_id}: {len(table.block_ids)} host blocks for "
                    f"{seq.num_computed_tokens}/{seq.num_tokens} tokens",
                )
            elif table.block_ids:
                expected = self.blocks_needed(seq.num_tokens + table.num_lookahead)
                _check(
                    len(table.block_ids) == expected,
                    f"{seq.seq_id}: {len(table.block_ids)} blocks for "
                    f"{seq.num_tokens} tokens (+{table.num_lookahead} lookahead), "
                    f"expected {expected}",
                )
            for block_id in table.block_ids:
                counts = refs[table.device]
                counts[block_id] = counts.get(block_id, 0) + 1

        for device, pool in ((Device.DEVICE, self.device_pool), (Device.HOST, self.host_pool)):
            _check(pool.num_used <= pool.num_blocks, f"{device.value} budget exceeded")
            _check(set(pool.free_queue) == pool._free_set, f"{device.value} free list out of sync")
            _check(len(pool.free_queue) == len(pool._free_set), f"{device.value} free list duplicates")
            for block in pool.blocks:
                expected = refs[device].get(block.block_id, 0)
                _check(
                    block.ref_count == expected,
                    f"{device.value} block {block.block_id}: ref_count "
                    f"{block.ref_count} != {expected} table references",
                )
                _check(
                    (block.ref_count == 0) == pool.is_free(block.block_id),
                    f"{device.value} block {block.block_id}: ref_count "
                    f"{block.ref_count} but free={pool.is_free(block.block_id)}",
                )
