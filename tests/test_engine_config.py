"""Tests for engine configuration and request validation."""

from __future__ import annotations

import pytest

from conftest import make_request
from mlx_paged_engine.config import ConfigError, EngineConfig, MemoryConfig, SchedulerConfig
from mlx_paged_engine.types import InvalidRequestError, SamplingParams


class TestSchedulerConfig:
    def test_defaults_valid(self):
        SchedulerConfig().validate()

    @pytest.mark.parametrize(
        "overrides",
        [
            {"batching_method": "static"},
            {"eviction_policy": "drop"},
            {"preemption_tiebreak": "random"},
            {"max_num_seqs": 0},
            {"max_num_batched_tokens": 0},
            {"prefill_chunk_size": -1},
            {"watermark_blocks": -1},
            {"max_queue_size": 0},
        ],
    )
    def test_invalid(self, overrides):
        with pytest.raises(ConfigError):
            SchedulerConfig(**overrides).validate()

    def test_unchunked_prefill_must_fit_budget(self):
        with pytest.raises(ConfigError):
            SchedulerConfig(prefill_chunk_size=0, max_num_batched_tokens=64, max_model_len=128).validate()


class TestMemoryConfig:
    def test_explicit_blocks(self):
        assert MemoryConfig(num_device_blocks=10, num_host_blocks=3).resolve(128) == (10, 3)

    def test_from_byte_budget(self):
        config = MemoryConfig(block_size=16, device_memory_bytes=16 * 100 * 10, swap_space_bytes=16 * 100 * 2)
        assert config.resolve(100) == (10, 2)

    def test_from_fraction(self):
        config = MemoryConfig(block_size=1, total_device_memory=1000, device_memory_fraction=0.5, num_host_blocks=0)
        assert config.resolve(10) == (50, 0)

    def test_budget_too_small(self):
        with pytest.raises(ConfigError):
            MemoryConfig(block_size=16, device_memory_bytes=100).resolve(100)

    def test_invalid_fraction(self):
        with pytest.raises(ConfigError):
            MemoryConfig(device_memory_fraction=0.0).validate()


class TestEngineConfig:
    def test_validate_nested(self):
        config = EngineConfig(scheduler=SchedulerConfig(max_num_seqs=0))
        with pytest.raises(ConfigError):
            config.validate()

    def test_default_max_new_tokens(self):
        with pytest.raises(ConfigError):
            EngineConfig(default_max_new_tokens=0).validate()


class TestRequestValidation:
    def test_valid(self):
        make_request().validate(vocab_size=64, max_model_len=64)

    @pytest.mark.parametrize(
        "sampling",
        [
            {"temperature": -0.1},
            {"top_p": 0.0},
            {"top_k": -1},
            {"min_p": 1.0},
            {"repetition_penalty": 0.0},
            {"presence_penalty": 3.0},
            {"max_new_tokens": 0},
            {"n": 0},
            {"top_logprobs": 2},
            {"stop_sequences": [[]]},
            {"stop_token_ids": [64]},
            {"logit_bias": {99: 1.0}},
        ],
    )
    def test_invalid_sampling(self, sampling):
        max_new = sampling.pop("max_new_tokens", 4)
        with pytest.raises(InvalidRequestError):
            make_request(max_new_tokens=max_new, **sampling).validate(vocab_size=64)

    def test_empty_prompt(self):
        request = make_request()
        request.prompt_tokens = []
        with pytest.raises(InvalidRequestError):
            request.validate()

    def test_prompt_out_of_vocab(self):
        with pytest.raises(InvalidRequestError):
            make_request(prompt_tokens=[1, 70]).validate(vocab_size=64)

    def test_prompt_too_long(self):
        with pytest.raises(InvalidRequestError):
            make_request(prompt_tokens=[1] * 8).validate(max_model_len=8)

    def test_greedy(self):
        assert SamplingParams(temperature=0.0).is_greedy
