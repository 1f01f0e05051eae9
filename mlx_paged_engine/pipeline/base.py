"""Forward-pass capability interface.

The engine treats "run a forward pass over a batch" as opaque. A pipeline
receives a ``BatchDescriptor`` and returns, for every entry, the logits
rows for that entry's trailing positions.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Iterable, Optional

import mlx.core as mx

from mlx_paged_engine.types import BatchDescriptor


class ExecutionError(Exception):
    """Raised by a pipeline when a batch (or part of one) cannot run.

    Attributes:
        seq_ids: Sequences that failed. None means the whole batch failed.
        output: Logits for the entries that did run, when only some failed.
    """

    def __init__(
        self,
        message: str,
        seq_ids: Optional[Iterable[str]] = None,
        output: Optional[BatchOutput] = None,
    ) -> None:
        super().__init__(message)
        self.seq_ids: Optional[set[str]] = set(seq_ids) if seq_ids is not None else None
        self.output = output


@dataclass
class BatchOutput:
    """Result of ``Pipeline.run_batch``.

    Attributes:
        logits: seq_id -> [num_logits, vocab] float array. Row ``i`` is the
            distribution for the token after input position
            ``len(input_ids) - num_logits + i``.
    """

    step_id: int
    logits: dict[str, mx.array] = field(default_factory=dict)


class Pipeline(ABC):
    """A model that can run paged batches.

    Subclasses must implement:
    - run_batch(): apply ``block_ops`` in order, then run every entry
    - vocab_size: size of the logits rows
    - kv_footprint_per_token: bytes of KV one token occupies
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Identifier used in logs."""

    @property
    @abstractmethod
    def vocab_size(self) -> int:
        """Number of logits per row."""

    @property
    @abstractmethod
    def kv_footprint_per_token(self) -> int:
        """Bytes of KV cache per token across all layers."""

    @abstractmethod
    def run_batch(self, batch: BatchDescriptor) -> BatchOutput:
        """Run one forward pass.

        Raises:
            ExecutionError: If some or all entries failed.
        """

    def close(self) -> None:
        """Release model resources. Default is a no-op."""
