"""Dynamic speculation controller.

Adjusts speculation depth (k) and on/off state based on runtime
statistics. Prevents spec decode overhead from degrading performance
at high batch sizes or when acceptance rate is low.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from typing import Dict

from mlx_paged_engine.spec_decode.config import SpecDecodeConfig

logger = logging.getLogger(__name__)


class SpecState(enum.Enum):
    """Phase of the current speculative step."""

    IDLE = "idle"
    DRAFTING = "drafting"
    VERIFYING = "verifying"
    COMMITTING = "committing"


@dataclass
class SpecDecodeStats:
    """Cumulative statistics for speculative decoding.

    Tracked across all steps, all sequences. Reset only on engine restart.
    """

    total_proposed: int = 0    # Total draft tokens proposed
    total_accepted: int = 0    # Total draft tokens accepted
    total_steps: int = 0       # Total spec decode steps executed
    total_seq_steps: int = 0   # Sequences verified, summed over steps
    total_bonus_tokens: int = 0  # Total bonus tokens (all k accepted)
    total_fallback_steps: int = 0  # Steps where spec decode was skipped
    total_rollback_blocks: int = 0  # Lookahead blocks released on rejection

    @property
    def acceptance_rate(self) -> float:
        """Overall acceptance rate across all steps."""
        if self.total_proposed == 0:
            return 0.0
        return self.total_accepted / self.total_proposed

    @property
    def avg_tokens_per_step(self) -> float:
        """Average tokens committed per sequence per spec decode step.

        1.0 = no benefit from spec decode.
        k+1 = maximum possible (all drafts accepted + bonus).
        """
        if self.total_seq_steps == 0:
            return 1.0
        # Every verified sequence also commits one resampled or bonus token
        return (self.total_accepted + self.total_seq_steps) / self.total_seq_steps


class DynamicSpecController:
    """Controls speculation depth and activation based on runtime stats.

    Decision flow:
    1. batch_size >= disable_by_batch_size --> spec OFF
    2. acceptance_rate_ema < threshold --> spec OFF
    3. If adaptive_k enabled, adjust k based on acceptance rate:
       - ema > 0.8 --> k = max (aggressive)
       - ema > 0.5 --> k = max - 2 (moderate)
       - ema > 0.3 --> k = 1 (conservative)
       - ema <= 0.3 --> k = 0 (OFF)

    Attributes:
        config: SpecDecodeConfig with thresholds and settings.
        acceptance_rate_ema: Exponential moving average of acceptance rate.
            Initialized to 0.7 (optimistic start).
        state: Phase of the step in flight.
        stats: Cumulative statistics.
    """

    def __init__(self, config: SpecDecodeConfig) -> None:
        self.config = config
        self.acceptance_rate_ema: float = 0.7  # Optimistic initial value
        self.state = SpecState.IDLE
        self.stats = SpecDecodeStats()

    def transition(self, state: SpecState) -> None:
        logger.debug("Spec decode: %s -> %s", self.state.value, state.value)
        self.state = state

    def should_speculate(self, batch_size: int) -> bool:
        """Decide whether to use spec decode for this step.

        Args:
            batch_size: Current number of decoding sequences.

        Returns:
            True if spec decode should be used.
        """
        if not self.config.enabled:
            return False

        # Batch size threshold (0 = never disable)
        if (
            self.config.disable_by_batch_size > 0
            and batch_size >= self.config.disable_by_batch_size
        ):
            return False

        # If dynamic control is disabled, always speculate
        if not self.config.dynamic_enabled:
            return True

        # Acceptance rate threshold
        return self.acceptance_rate_ema >= self.config.acceptance_rate_threshold

    def get_k(self, batch_size: int) -> int:
        """Get the speculation depth for this step.

        Args:
            batch_size: Current number of decoding sequences.

        Returns:
            Number of draft tokens (0 = no speculation).
        """
        if not self.should_speculate(batch_size):
            return 0

        k = self.config.num_speculative_tokens

        if not self.config.adaptive_k:
            return k

        # Adaptive k based on acceptance rate EMA
        if self.acceptance_rate_ema > 0.8:
            return k                    # Full speculation
        elif self.acceptance_rate_ema > 0.5:
            return max(1, k - 2)        # Moderate
        elif self.acceptance_rate_ema > 0.3:
            return 1                    # Conservative
        else:
            return 0                    # Off

    def update(
        self,
        num_proposed: int,
        num_accepted: int,
        num_bonus: int = 0,
        num_seqs: int = 1,
        num_rollback_blocks: int = 0,
    ) -> None:
        """Update statistics after a speculative decode step.

        Args:
            num_proposed: Total draft tokens proposed across batch.
            num_accepted: Total draft tokens accepted across batch.
            num_bonus: Total bonus tokens generated (full acceptance).
            num_seqs: Sequences verified in the step.
            num_rollback_blocks: Lookahead blocks freed after rejections.
        """
        self.stats.total_proposed += num_proposed
        self.stats.total_accepted += num_accepted
        self.stats.total_bonus_tokens += num_bonus
        self.stats.total_seq_steps += num_seqs
        self.stats.total_rollback_blocks += num_rollback_blocks
        self.stats.total_steps += 1

        if num_proposed > 0:
            step_rate = num_accepted / num_proposed
            alpha = self.config.acceptance_rate_ema_alpha
            threshold = self.config.acceptance_rate_threshold
            was_above = self.acceptance_rate_ema >= threshold
            self.acceptance_rate_ema = (
                alpha * step_rate + (1 - alpha) * self.acceptance_rate_ema
            )
            if was_above and self.acceptance_rate_ema < threshold and self.config.dynamic_enabled:
                # Final: no updates arrive while speculation is off
                logger.info(
                    "Spec decode disabled (acceptance EMA %.3f, threshold %.3f)",
                    self.acceptance_rate_ema, threshold,
                )

    def record_fallback(self) -> None:
        """Record that spec decode was skipped for a step."""
        self.stats.total_fallback_steps += 1

    def get_metrics(self) -> Dict:
        """Return metrics dict for monitoring."""
        return {
            "spec_decode_enabled": self.config.enabled,
            "state": self.state.value,
            "acceptance_rate_ema": round(self.acceptance_rate_ema, 4),
            "acceptance_rate_overall": round(self.stats.acceptance_rate, 4),
            "avg_tokens_per_step": round(self.stats.avg_tokens_per_step, 2),
            "total_steps": self.stats.total_steps,
            "total_fallback_steps": self.stats.total_fallback_steps,
            "total_proposed": self.stats.total_proposed,
            "total_accepted": self.stats.total_accepted,
            "total_bonus_tokens": self.stats.total_bonus_tokens,
            "total_rollback_blocks": self.stats.total_rollback_blocks,
            "current_k": self.config.num_speculative_tokens,
            "adaptive_k_current": self.get_k(1),  # k at batch_size=1
        }
