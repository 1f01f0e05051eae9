"""Speculative decoding for mlx-paged-engine.

Provides draft-then-verify generation over the paged cache:
- Draft model proposals batched across sequences
- Rejection sampling verification (output distribution matches the target)
- Dynamic controller (adaptive speculation depth)
"""

from mlx_paged_engine.spec_decode.config import SpecDecodeConfig, SpeculativeConfigError

__all__ = ["SpecDecodeConfig", "SpeculativeConfigError"]
