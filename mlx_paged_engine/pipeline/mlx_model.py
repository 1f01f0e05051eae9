"""Pipeline backed by an mlx-lm model.

mlx-lm models keep a contiguous KV cache per sequence rather than a paged
one, so this pipeline keeps one prompt cache per sequence id and maps the
engine's paging decisions onto it:

- ``forks`` deep-copy the parent's cache
- ``released`` sequences drop their cache
- an entry starting before the cache's end trims the cache back first
  (speculative rollback, recompute after preemption)

Block copies and swaps need no data movement here: the caches stay in
unified memory while a sequence is swapped out.
"""

from __future__ import annotations

import copy
import logging
from typing import Any, Optional

import mlx.core as mx
from mlx.utils import tree_flatten
from mlx_lm import load as mlx_load
from mlx_lm.models.cache import can_trim_prompt_cache, make_prompt_cache, trim_prompt_cache

from mlx_paged_engine.pipeline.base import BatchOutput, ExecutionError, Pipeline
from mlx_paged_engine.types import BatchDescriptor, BatchEntry

logger = logging.getLogger(__name__)


def _cache_offset(cache: list[Any]) -> int:
    return cache[0].offset if cache else 0


class MlxLmPipeline(Pipeline):
    """Run batches through an ``mlx_lm`` model, one sequence at a time.

    Args:
        model: A loaded mlx-lm model.
        tokenizer: The matching tokenizer wrapper (used for detokenizing
            and as the vocab size fallback).
        name: Identifier used in logs.
    """

    def __init__(self, model: Any, tokenizer: Any = None, name: str = "mlx-lm") -> None:
        self.model = model
        self.tokenizer = tokenizer
        self._name = name
        self._caches: dict[str, list[Any]] = {}
        self._vocab_size = self._infer_vocab_size()
        self._kv_bytes = self._infer_kv_bytes()

    @classmethod
    def from_pretrained(cls, model_path: str, name: Optional[str] = None) -> MlxLmPipeline:
        """Load a model with ``mlx_lm.load``."""
        logger.info("Loading model from %s", model_path)
        model, tokenizer = mlx_load(model_path)
        return cls(model, tokenizer, name=name or model_path)

    # --- Model facts ---

    def _infer_vocab_size(self) -> int:
        args = getattr(self.model, "args", None)
        vocab = getattr(args, "vocab_size", None)
        if vocab is None and self.tokenizer is not None:
            vocab = getattr(self.tokenizer, "vocab_size", None)
        if vocab is None:
            raise ValueError(f"{self._name}: cannot determine vocab size")
        return int(vocab)

    def _infer_kv_bytes(self) -> int:
        """Keys + values for one token across all layers."""
        args = getattr(self.model, "args", None)
        num_layers = len(getattr(self.model, "layers", [])) or getattr(args, "num_hidden_layers", 1)
        num_heads = getattr(args, "num_attention_heads", 1)
        num_kv_heads = getattr(args, "num_key_value_heads", None) or num_heads
        head_dim = getattr(args, "head_dim", None)
        if head_dim is None:
            head_dim = getattr(args, "hidden_size", num_heads) // num_heads
        itemsize = 2
        for _, value in tree_flatten(self.model.parameters()):
            if value.dtype in (mx.float16, mx.bfloat16, mx.float32):
                itemsize = value.dtype.size
                break
        return 2 * num_layers * num_kv_heads * head_dim * itemsize

    @property
    def name(self) -> str:
        return self._name

    @property
    def vocab_size(self) -> int:
        return self._vocab_size

    @property
    def kv_footprint_per_token(self) -> int:
        return self._kv_bytes

    # --- Per-sequence caches ---

    def _apply_bookkeeping(self, batch: BatchDescriptor) -> None:
        for parent, child in batch.forks:
            parent_cache = self._caches.get(parent)
            if parent_cache is not None:
                self._caches[child] = copy.deepcopy(parent_cache)
        for seq_id in batch.released:
            self._caches.pop(seq_id, None)

    def _cache_for(self, entry: BatchEntry) -> list[Any]:
        cache = self._caches.get(entry.seq_id)
        if cache is None:
            cache = make_prompt_cache(self.model)
            self._caches[entry.seq_id] = cache
        offset = _cache_offset(cache)
        if entry.start_pos < offset:
            if not can_trim_prompt_cache(cache):
                # Rebuild from scratch only works from position 0
                if entry.start_pos != 0:
                    raise ValueError(
                        f"{entry.seq_id}: cache cannot be trimmed to {entry.start_pos}"
                    )
                cache = make_prompt_cache(self.model)
                self._caches[entry.seq_id] = cache
            else:
                trim_prompt_cache(cache, offset - entry.start_pos)
        elif entry.start_pos > offset:
            raise ValueError(
                f"{entry.seq_id}: entry starts at {entry.start_pos} but cache holds {offset}"
            )
        return cache

    def _run_entry(self, entry: BatchEntry) -> mx.array:
        cache = self._cache_for(entry)
        inputs = mx.array(entry.input_ids)[None]
        logits = self.model(inputs, cache=cache)
        rows = logits[0, logits.shape[1] - entry.num_logits :, :].astype(mx.float32)
        mx.eval(rows)
        return rows

    def run_batch(self, batch: BatchDescriptor) -> BatchOutput:
        self._apply_bookkeeping(batch)
        output = BatchOutput(step_id=batch.step_id)
        failed: list[str] = []
        for entry in batch.entries:
            try:
                output.logits[entry.seq_id] = self._run_entry(entry)
            except (ValueError, RuntimeError) as e:
                logger.error("%s: entry %s failed: %s", self._name, entry.seq_id, e, exc_info=True)
                self._caches.pop(entry.seq_id, None)
                failed.append(entry.seq_id)
        if failed:
            raise ExecutionError(
                f"{self._name}: {len(failed)} sequence(s) failed", seq_ids=failed, output=output
            )
        return output

    def close(self) -> None:
        self._caches.clear()
