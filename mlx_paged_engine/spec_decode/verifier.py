"""Rejection sampling verification for speculative decoding.

For draft tokens ``d_1..d_k`` proposed from distributions ``q_i`` and
target distributions ``p_i`` (``p_{k+1}`` being the one after the last
draft), the emitted tokens are distributed exactly as if sampled from the
target alone:

- accept ``d_i`` with probability ``min(1, p_i(d_i) / q_i(d_i))``
- on the first rejection, emit a token from ``normalize(max(0, p_i - q_i))``
  and stop
- if every draft is accepted, emit a bonus token from ``p_{k+1}``
"""

from __future__ import annotations

from dataclasses import dataclass

import mlx.core as mx

from mlx_paged_engine.sampling import (
    ACCEPT_STREAM,
    RESIDUAL_STREAM,
    SAMPLE_STREAM,
    sample_from_probs,
    uniform,
)


@dataclass
class VerifyResult:
    """Outcome of verifying one sequence's drafts.

    Attributes:
        tokens: Tokens to commit: the accepted drafts followed by one
            resampled or bonus token.
        num_accepted: Draft tokens accepted.
        bonus: True if every draft was accepted.
    """

    tokens: list[int]
    num_accepted: int
    bonus: bool


def residual_distribution(target: mx.array, draft: mx.array) -> mx.array:
    """``normalize(max(0, target - draft))``, or ``target`` if that is empty."""
    residual = mx.maximum(target - draft, 0.0)
    total = float(mx.sum(residual).item())
    if total <= 0.0:
        return target
    return residual / total


class RejectionSampler:
    """Verifies drafts against target probabilities with seeded draws.

    The acceptance test is ``u * q(d) <= p(d)`` for ``u`` in [0, 1), so a
    draft whose distribution equals the target's is always accepted. Draws
    are keyed by the position they decide, which makes verification
    reproducible for a fixed seed.
    """

    def verify(
        self,
        draft_tokens: list[int],
        draft_probs: list[mx.array],
        target_probs: list[mx.array],
        seed: int,
        start_position: int,
    ) -> VerifyResult:
        """Verify one sequence.

        Args:
            draft_tokens: k proposed tokens.
            draft_probs: k draft distributions, row i produced ``draft_tokens[i]``.
            target_probs: k+1 target distributions for the same positions
                plus the one after the last draft.
            seed: Sequence seed.
            start_position: Position of the first draft token.
        """
        k = len(draft_tokens)
        if len(draft_probs) != k or len(target_probs) != k + 1:
            raise ValueError(
                f"Expected {k} draft rows and {k + 1} target rows, "
                f"got {len(draft_probs)} and {len(target_probs)}"
            )

        tokens: list[int] = []
        for i, token in enumerate(draft_tokens):
            pos = start_position + i
            p = float(target_probs[i][token].item())
            q = float(draft_probs[i][token].item())
            u = uniform(seed, pos, ACCEPT_STREAM)
            if u * q <= p and p > 0.0:
                tokens.append(token)
                continue
            residual = residual_distribution(target_probs[i], draft_probs[i])
            tokens.append(sample_from_probs(residual, uniform(seed, pos, RESIDUAL_STREAM)))
            return VerifyResult(tokens=tokens, num_accepted=i, bonus=False)

        pos = start_position + k
        tokens.append(sample_from_probs(target_probs[k], uniform(seed, pos, SAMPLE_STREAM)))
        return VerifyResult(tokens=tokens, num_accepted=k, bonus=True)
