"""Logits processing and seeded sampling.

Every random draw is keyed by ``(seed, position, stream)`` rather than by a
shared generator, so a token at a given position is drawn with the same
randomness no matter how the work was batched or whether it went through
speculative decoding.
"""

from __future__ import annotations

import hashlib
import math
import struct

import mlx.core as mx

from mlx_paged_engine.types import SamplingParams, TokenLogprob

# Random streams
SAMPLE_STREAM = 0  # Token draws (target decode, draft proposals, bonus token)
ACCEPT_STREAM = 1  # Speculative acceptance tests
RESIDUAL_STREAM = 2  # Resampling after a rejected draft

_NEG_INF = float("-inf")


def position_key(seed: int, position: int, stream: int = SAMPLE_STREAM) -> mx.array:
    """PRNG key for one draw."""
    digest = hashlib.blake2b(
        struct.pack("<qqq", seed, position, stream), digest_size=8
    ).digest()
    return mx.random.key(int.from_bytes(digest, "little") >> 1)


def uniform(seed: int, position: int, stream: int = SAMPLE_STREAM) -> float:
    """A float in [0, 1) for one draw."""
    return float(mx.random.uniform(key=position_key(seed, position, stream)).item())


# ---------------------------------------------------------------------------
# Logits processors (1-D rows of size vocab)
# ---------------------------------------------------------------------------


def apply_penalties(
    logits: mx.array,
    context: list[int],
    output: list[int],
    params: SamplingParams,
) -> mx.array:
    """Repetition penalty over the whole context, presence/frequency over output."""
    if params.repetition_penalty != 1.0 and context:
        ids = mx.array(sorted(set(context)))
        selected = logits[ids]
        selected = mx.where(
            selected < 0,
            selected * params.repetition_penalty,
            selected / params.repetition_penalty,
        )
        logits[ids] = selected
    if (params.presence_penalty or params.frequency_penalty) and output:
        counts: dict[int, int] = {}
        for t in output:
            counts[t] = counts.get(t, 0) + 1
        ids = mx.array(list(counts))
        freq = mx.array(list(counts.values()), dtype=logits.dtype)
        logits[ids] = (
            logits[ids] - params.frequency_penalty * freq - params.presence_penalty
        )
    return logits


def apply_logit_bias(logits: mx.array, logit_bias: dict[int, float]) -> mx.array:
    if logit_bias:
        ids = mx.array(list(logit_bias))
        logits[ids] = logits[ids] + mx.array(list(logit_bias.values()), dtype=logits.dtype)
    return logits


def apply_top_k(logprobs: mx.array, top_k: int) -> mx.array:
    vocab = logprobs.shape[-1]
    if top_k <= 0 or top_k >= vocab:
        return logprobs
    mask_idx = mx.argpartition(-logprobs, kth=top_k - 1)[top_k:]
    logprobs[mask_idx] = _NEG_INF
    return logprobs


def apply_top_p(logprobs: mx.array, top_p: float) -> mx.array:
    """Keep the smallest set of tokens whose cumulative probability exceeds top_p."""
    if top_p >= 1.0:
        return logprobs
    probs = mx.exp(logprobs)
    order = mx.argsort(-logprobs)
    sorted_probs = probs[order]
    cumulative = mx.cumsum(sorted_probs)
    # A token stays if the mass before it is still below top_p
    keep_sorted = (cumulative - sorted_probs) < top_p
    keep = mx.zeros_like(keep_sorted)
    keep[order] = keep_sorted
    return mx.where(keep, logprobs, _NEG_INF)


def apply_min_p(logprobs: mx.array, min_p: float) -> mx.array:
    """Drop tokens less likely than ``min_p`` times the top token."""
    if min_p <= 0.0:
        return logprobs
    threshold = mx.max(logprobs) + math.log(min_p)
    return mx.where(logprobs >= threshold, logprobs, _NEG_INF)


def log_softmax(logits: mx.array) -> mx.array:
    return logits - mx.logsumexp(logits, axis=-1, keepdims=True)


def adjusted_logits(
    logits: mx.array,
    context: list[int],
    num_prompt_tokens: int,
    params: SamplingParams,
) -> mx.array:
    """Penalties and logit bias applied to a copy of one logits row."""
    logits = mx.array(logits, dtype=mx.float32)
    logits = apply_penalties(logits, context, context[num_prompt_tokens:], params)
    return apply_logit_bias(logits, params.logit_bias)


def probs_from_logits(logits: mx.array, params: SamplingParams) -> mx.array:
    """Final sampling distribution for an adjusted logits row.

    Greedy requests get a one-hot row at the argmax, so the speculative
    acceptance rule reduces to exact argmax matching.
    """
    if params.is_greedy:
        return one_hot(int(mx.argmax(logits).item()), logits.shape[-1])
    logprobs = log_softmax(logits / params.temperature)
    logprobs = apply_top_k(logprobs, params.top_k)
    logprobs = apply_top_p(logprobs, params.top_p)
    logprobs = apply_min_p(logprobs, params.min_p)
    return mx.softmax(logprobs, axis=-1)


def one_hot(token_id: int, vocab_size: int) -> mx.array:
    row = mx.zeros((vocab_size,), dtype=mx.float32)
    row[token_id] = 1.0
    return row


def sample_from_probs(probs: mx.array, u: float) -> int:
    """Inverse-CDF draw: the first token whose cumulative mass exceeds ``u``."""
    cdf = mx.cumsum(probs)
    total = cdf[-1]
    idx = int(mx.sum(cdf <= u * total).item())
    return min(idx, probs.shape[-1] - 1)


def token_logprob(logits: mx.array, token_id: int, num_top: int = 0) -> TokenLogprob:
    """Log probability of ``token_id`` and the ``num_top`` best alternatives."""
    logprobs = log_softmax(logits)
    top: list[tuple[int, float]] = []
    if num_top > 0:
        order = mx.argsort(-logprobs)[:num_top].tolist()
        values = logprobs[mx.array(order)].tolist()
        top = list(zip(order, values))
    return TokenLogprob(
        token_id=token_id,
        logprob=float(logprobs[token_id].item()),
        top=top,
    )


class Sampler:
    """Draws tokens for one sequence from its processed distribution."""

    def __init__(self, params: SamplingParams, seed: int) -> None:
        self.params = params
        self.seed = seed

    def distribution(
        self, logits: mx.array, context: list[int], num_prompt_tokens: int
    ) -> tuple[mx.array, mx.array]:
        """Return (adjusted_logits, probs) for the next token after ``context``."""
        adjusted = adjusted_logits(logits, context, num_prompt_tokens, self.params)
        return adjusted, probs_from_logits(adjusted, self.params)

    def draw(self, probs: mx.array, position: int, stream: int = SAMPLE_STREAM) -> int:
        if self.params.is_greedy:
            return int(mx.argmax(probs).item())
        return sample_from_probs(probs, uniform(self.seed, position, stream))

    def logprob(self, adjusted: mx.array, token_id: int) -> TokenLogprob | None:
        if not self.params.logprobs:
            return None
        return token_logprob(adjusted, token_id, self.params.top_logprobs)

    def sample(
        self, logits: mx.array, context: list[int], num_prompt_tokens: int
    ) -> tuple[int, TokenLogprob | None]:
        """Sample the token at position ``len(context)``."""
        adjusted, probs = self.distribution(logits, context, num_prompt_tokens)
        token = self.draw(probs, len(context))
        return token, self.logprob(adjusted, token)
