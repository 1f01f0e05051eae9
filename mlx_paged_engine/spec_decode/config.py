"""Configuration for speculative decoding."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Literal

if TYPE_CHECKING:
    from mlx_paged_engine.pipeline.base import Pipeline


class SpeculativeConfigError(ValueError):
    """Raised when a draft/target pipeline pairing cannot be used."""


@dataclass
class SpecDecodeConfig:
    """Speculative decoding configuration.

    Attributes:
        enabled: Use the draft pipeline when one is supplied to the engine.
        num_speculative_tokens: Number of draft tokens (k) per spec step.
            Higher k = more potential gain but more wasted work on
            rejection. Typical range: 2-5 for a draft model.
        draft_sampling: "sample" draws draft tokens from the processed
            draft distribution (required for the output distribution to
            match the target exactly at temperature > 0). "greedy" drafts
            with argmax, treating the draft distribution as one-hot.
        disable_by_batch_size: Auto-disable spec decode when the decode
            batch reaches this size. Set to 0 to never disable.
        dynamic_enabled: Enable dynamic speculation control (adaptive k
            and auto-disable based on acceptance rate).
        acceptance_rate_threshold: Minimum EMA acceptance rate to keep
            spec decode active. Below this, falls back to normal decode.
        acceptance_rate_ema_alpha: Smoothing factor for the acceptance rate
            exponential moving average. Lower = more smoothing.
        adaptive_k: Adjust k from the acceptance rate EMA.
        on_config_error: "fallback" logs an incompatible pairing and runs
            without speculation, "abort" raises at engine construction.
    """

    enabled: bool = True
    num_speculative_tokens: int = 4
    draft_sampling: Literal["sample", "greedy"] = "sample"
    disable_by_batch_size: int = 0

    # Dynamic control
    dynamic_enabled: bool = False
    acceptance_rate_threshold: float = 0.3
    acceptance_rate_ema_alpha: float = 0.1
    adaptive_k: bool = False

    on_config_error: Literal["fallback", "abort"] = "abort"

    def validate(self) -> None:
        """Validate configuration consistency.

        Raises:
            SpeculativeConfigError: If numeric values are out of range or a
                mode string is unknown.
        """
        if self.num_speculative_tokens < 1:
            raise SpeculativeConfigError(
                f"num_speculative_tokens must be >= 1, got {self.num_speculative_tokens}"
            )
        if self.num_speculative_tokens > 20:
            raise SpeculativeConfigError(
                f"num_speculative_tokens must be <= 20, got {self.num_speculative_tokens}"
            )
        if self.draft_sampling not in ("sample", "greedy"):
            raise SpeculativeConfigError(
                f"Unknown draft_sampling: {self.draft_sampling}"
            )
        if self.on_config_error not in ("fallback", "abort"):
            raise SpeculativeConfigError(
                f"Unknown on_config_error: {self.on_config_error}"
            )
        if not (0.0 <= self.acceptance_rate_threshold <= 1.0):
            raise SpeculativeConfigError(
                f"acceptance_rate_threshold must be in [0, 1], got {self.acceptance_rate_threshold}"
            )
        if not (0.0 < self.acceptance_rate_ema_alpha <= 1.0):
            raise SpeculativeConfigError(
                f"acceptance_rate_ema_alpha must be in (0, 1], got {self.acceptance_rate_ema_alpha}"
            )
        if self.disable_by_batch_size < 0:
            raise SpeculativeConfigError(
                f"disable_by_batch_size must be >= 0, got {self.disable_by_batch_size}"
            )


def validate_pairing(draft: Pipeline, target: Pipeline) -> None:
    """Check that a draft pipeline can propose tokens for a target pipeline.

    Raises:
        SpeculativeConfigError: If the vocabularies differ or the draft is
            the very same object as the target's KV owner.
    """
    if draft.vocab_size != target.vocab_size:
        raise SpeculativeConfigError(
            f"Draft vocab {draft.vocab_size} != target vocab {target.vocab_size} "
            f"({draft.name} vs {target.name})"
        )
    if draft is target:
        raise SpeculativeConfigError(
            "Draft and target must be separate pipeline instances "
            "(each owns its own KV storage)"
        )
