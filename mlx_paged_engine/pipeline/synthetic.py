"""Deterministic paged pipeline for tests and benchmarks.

``SyntheticPipeline`` behaves like a model without any weights: it writes
each input token into its own block store at the slot the engine assigned,
reads the full context back through the block table, and derives the
logits from a hash of that context. A wrong slot mapping, a missed
copy-on-write or a lost swap therefore changes the output instead of going
unnoticed, and two instances built with the same ``model_seed`` produce
identical logits (a draft equal to its target).
"""

from __future__ import annotations

import hashlib
import logging
import struct
from typing import Optional

import mlx.core as mx

from mlx_paged_engine.pipeline.base import BatchOutput, ExecutionError, Pipeline
from mlx_paged_engine.types import BatchDescriptor, BatchEntry, BlockOpKind

logger = logging.getLogger(__name__)


class SyntheticPipeline(Pipeline):
    """Weightless model over a paged token store.

    Args:
        vocab_size: Size of each logits row.
        block_size: Tokens per block; must match the allocator.
        model_seed: Seeds the logits function. Equal seeds give equal models.
        sharpness: Scale of the logits. Higher values make each
            distribution more peaked.
        kv_bytes_per_token: Footprint reported for memory budgeting.
        name: Identifier used in logs.
    """

    def __init__(
        self,
        vocab_size: int = 64,
        block_size: int = 16,
        model_seed: int = 0,
        sharpness: float = 3.0,
        kv_bytes_per_token: int = 256,
        name: str = "synthetic",
    ) -> None:
        if vocab_size < 2:
            raise ValueError(f"vocab_size must be >= 2, got {vocab_size}")
        self._vocab_size = vocab_size
        self.block_size = block_size
        self.model_seed = model_seed
        self.sharpness = sharpness
        self._kv_bytes_per_token = kv_bytes_per_token
        self._name = name

        self._device_store: dict[int, list[Optional[int]]] = {}
        self._host_store: dict[int, list[Optional[int]]] = {}

        # Failure injection
        self.fail_seq_ids: set[str] = set()
        self.fail_next_batch = False

        self.num_batches = 0
        self.num_tokens_processed = 0
        self.block_ops_applied: dict[str, int] = {kind.value: 0 for kind in BlockOpKind}

    @property
    def name(self) -> str:
        return self._name

    @property
    def vocab_size(self) -> int:
        return self._vocab_size

    @property
    def kv_footprint_per_token(self) -> int:
        return self._kv_bytes_per_token

    # --- Block store ---

    def _block(self, store: dict[int, list[Optional[int]]], block_id: int) -> list[Optional[int]]:
        block = store.get(block_id)
        if block is None:
            block = [None] * self.block_size
            store[block_id] = block
        return block

    def _apply_block_ops(self, batch: BatchDescriptor) -> None:
        for op in batch.block_ops:
            if op.kind == BlockOpKind.COPY:
                src, dst = self._device_store, self._device_store
            elif op.kind == BlockOpKind.SWAP_OUT:
                src, dst = self._device_store, self._host_store
            else:
                src, dst = self._host_store, self._device_store
            dst[op.dst] = list(self._block(src, op.src))
            self.block_ops_applied[op.kind.value] += 1

    def _write(self, slot: int, token_id: int) -> None:
        block_id, offset = divmod(slot, self.block_size)
        self._block(self._device_store, block_id)[offset] = token_id

    def read_context(self, block_table: list[int], length: int) -> list[int]:
        """Tokens at positions ``0 .. length - 1`` as stored on the device.

        Raises:
            KeyError: If a position was never written.
        """
        tokens = []
        for pos in range(length):
            block_id = block_table[pos // self.block_size]
            token = self._device_store.get(block_id, [None] * self.block_size)[pos % self.block_size]
            if token is None:
                raise KeyError(f"position {pos} (block {block_id}) holds no KV")
            tokens.append(token)
        return tokens

    # --- Model ---

    def logits_for(self, context: list[int]) -> mx.array:
        """Logits for the token following ``context``."""
        h = hashlib.blake2b(digest_size=8)
        h.update(struct.pack("<q", self.model_seed))
        h.update(struct.pack(f"<{len(context)}q", *context))
        key = mx.random.key(int.from_bytes(h.digest(), "little") >> 1)
        return mx.random.normal((self._vocab_size,), key=key) * self.sharpness

    def _run_entry(self, entry: BatchEntry) -> mx.array:
        if len(entry.slot_mapping) != len(entry.input_ids):
            raise ValueError(
                f"{entry.seq_id}: {len(entry.slot_mapping)} slots for "
                f"{len(entry.input_ids)} input tokens"
            )
        for slot, token_id in zip(entry.slot_mapping, entry.input_ids):
            self._write(slot, token_id)
        end = entry.start_pos + len(entry.input_ids)
        context = self.read_context(entry.block_table, end)
        rows = [
            self.logits_for(context[: end - entry.num_logits + i + 1])
            for i in range(entry.num_logits)
        ]
        if not rows:
            return mx.zeros((0, self._vocab_size))
        return mx.stack(rows)

    def run_batch(self, batch: BatchDescriptor) -> BatchOutput:
        self.num_batches += 1
        self._apply_block_ops(batch)
        if self.fail_next_batch:
            self.fail_next_batch = False
            raise ExecutionError(f"{self._name}: injected batch failure")

        output = BatchOutput(step_id=batch.step_id)
        failed: list[str] = []
        for entry in batch.entries:
            if entry.seq_id in self.fail_seq_ids:
                failed.append(entry.seq_id)
                continue
            try:
                output.logits[entry.seq_id] = self._run_entry(entry)
            except (KeyError, IndexError, ValueError) as e:
                logger.error("%s: entry %s failed: %s", self._name, entry.seq_id, e)
                failed.append(entry.seq_id)
                continue
            self.num_tokens_processed += len(entry.input_ids)

        if failed:
            raise ExecutionError(
                f"{self._name}: {len(failed)} sequence(s) failed", seq_ids=failed, output=output
            )
        return output
