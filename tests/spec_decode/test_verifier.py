"""Tests for rejection-sampling verification."""

from __future__ import annotations

import mlx.core as mx
import pytest

from mlx_paged_engine.sampling import one_hot
from mlx_paged_engine.spec_decode.verifier import RejectionSampler, residual_distribution


def _dist(*values: float) -> mx.array:
    return mx.array(list(values))


class TestResidualDistribution:
    def test_normalized_excess(self):
        residual = residual_distribution(_dist(0.5, 0.3, 0.2), _dist(0.2, 0.6, 0.2))
        assert residual.tolist() == pytest.approx([1.0, 0.0, 0.0])

    def test_identical_falls_back_to_target(self):
        p = _dist(0.25, 0.75)
        assert residual_distribution(p, p).tolist() == pytest.approx([0.25, 0.75])


class TestRejectionSampler:
    def test_identical_distributions_accept_everything(self):
        p = _dist(0.1, 0.2, 0.3, 0.4)
        sampler = RejectionSampler()
        for seed in range(10):
            result = sampler.verify([3, 0, 2], [p] * 3, [p] * 4, seed=seed, start_position=5)
            assert result.num_accepted == 3
            assert result.bonus
            assert result.tokens[:3] == [3, 0, 2]
            assert len(result.tokens) == 4

    def test_zero_target_probability_rejects(self):
        draft = one_hot(1, 3)
        target = _dist(0.0, 0.0, 1.0)
        result = RejectionSampler().verify(
            [1, 1], [draft, draft], [target, target, target], seed=0, start_position=0
        )
        assert result.num_accepted == 0
        assert not result.bonus
        # Residual puts all mass on the target's only token
        assert result.tokens == [2]

    def test_greedy_mismatch_yields_target_argmax(self):
        draft_rows = [one_hot(4, 6), one_hot(5, 6)]
        target_rows = [one_hot(4, 6), one_hot(2, 6), one_hot(0, 6)]
        result = RejectionSampler().verify([4, 5], draft_rows, target_rows, seed=1, start_position=10)
        assert result.tokens == [4, 2]
        assert result.num_accepted == 1

    def test_bonus_drawn_from_last_target_row(self):
        p = one_hot(2, 4)
        bonus_row = one_hot(3, 4)
        result = RejectionSampler().verify([2], [p], [p, bonus_row], seed=0, start_position=0)
        assert result.tokens == [2, 3]
        assert result.bonus

    def test_deterministic_for_seed(self):
        draft = _dist(0.5, 0.5)
        target = _dist(0.2, 0.8)
        args = ([0, 0, 1], [draft] * 3, [target] * 4)
        a = RejectionSampler().verify(*args, seed=7, start_position=3)
        b = RejectionSampler().verify(*args, seed=7, start_position=3)
        assert a == b

    def test_row_count_mismatch(self):
        p = _dist(0.5, 0.5)
        with pytest.raises(ValueError):
            RejectionSampler().verify([0, 1], [p, p], [p, p], seed=0, start_position=0)


class TestOutputDistribution:
    def test_different_draft_preserves_target_distribution(self):
        """Accepted or resampled, the committed token follows the target."""
        target = _dist(0.5, 0.3, 0.15, 0.05)
        draft = _dist(0.1, 0.2, 0.3, 0.4)
        num_trials = 4000
        draft_tokens = mx.random.categorical(
            mx.log(draft), num_samples=num_trials, key=mx.random.key(1234)
        ).tolist()

        sampler = RejectionSampler()
        counts = [0] * 4
        num_accepted = 0
        for seed, token in enumerate(draft_tokens):
            result = sampler.verify([token], [draft], [target, target], seed=seed, start_position=0)
            counts[result.tokens[0]] += 1
            num_accepted += result.num_accepted

        frequencies = [c / num_trials for c in counts]
        assert frequencies == pytest.approx([0.5, 0.3, 0.15, 0.05], abs=0.035)
        # Expected acceptance is sum(min(p, q)) = 0.1 + 0.2 + 0.15 + 0.05
        assert num_accepted / num_trials == pytest.approx(0.5, abs=0.035)
