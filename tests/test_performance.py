from __future__ import annotations

import math

import pytest

from variant_autoscaling.errors import ConfigurationError
from variant_autoscaling.performance import (
    DecodeParameters,
    PrefillParameters,
    effective_batch_size,
    itl,
    predict,
    ttft,
)


def test_itl_and_ttft_formulas() -> None:
    assert itl(10.0, 2.0, 4) == pytest.approx(18.0)
    assert ttft(5.0, 0.1, 100.0, 4) == pytest.approx(45.0)


def test_latency_non_decreasing_in_batch_size() -> None:
    for alpha, beta in [(0.0, 0.0), (10.0, 2.0), (3.5, 0.25)]:
        values = [itl(alpha, beta, b) for b in range(0, 64)]
        assert values == sorted(values)
    for gamma, delta, tokens in [(5.0, 0.01, 0.0), (5.0, 0.01, 512.0), (0.0, 1.0, 3.0)]:
        values = [ttft(gamma, delta, tokens, b) for b in range(0, 64)]
        assert values == sorted(values)
    by_tokens = [ttft(5.0, 0.01, tokens, 8) for tokens in range(0, 2048, 64)]
    assert by_tokens == sorted(by_tokens)


def test_parameters_parse_from_strings() -> None:
    decode = DecodeParameters.from_mapping({"alpha": "10.5", "beta": "2"})
    prefill = PrefillParameters.from_mapping({"gamma": "5", "delta": "0.01"})
    assert decode == DecodeParameters(alpha=10.5, beta=2.0)
    assert prefill == PrefillParameters(gamma=5.0, delta=0.01)


@pytest.mark.parametrize(
    "parms",
    [
        {"alpha": "10"},
        {"alpha": "10", "gamma": "2"},
        {"alpha": "ten", "beta": "2"},
        {"alpha": "nan", "beta": "2"},
        {"alpha": "-1", "beta": "2"},
    ],
)
def test_decode_parameters_reject_bad_maps(parms: dict[str, str]) -> None:
    with pytest.raises(ConfigurationError):
        DecodeParameters.from_mapping(parms)


def test_prefill_parameters_need_both_coefficients() -> None:
    with pytest.raises(ConfigurationError, match="prefill"):
        PrefillParameters.from_mapping({"gamma": "5"})


def test_effective_batch_size_zero_load() -> None:
    decode = DecodeParameters(alpha=10.0, beta=2.0)
    prefill = PrefillParameters(gamma=5.0, delta=0.01)
    assert effective_batch_size(decode, prefill, 0.0, 100.0, 100.0) == 0.0


def test_effective_batch_size_littles_law() -> None:
    decode = DecodeParameters(alpha=10.0, beta=2.0)
    prefill = PrefillParameters(gamma=0.0, delta=0.0)
    # 60 req/min = 0.001 req/ms; b = 0.001 * 1000 / (1 - 0.001 * 200)
    batch = effective_batch_size(decode, prefill, 60.0, 0.0, 100.0)
    assert batch == pytest.approx(1.25)


def test_effective_batch_size_saturates() -> None:
    decode = DecodeParameters(alpha=10.0, beta=2.0)
    prefill = PrefillParameters(gamma=0.0, delta=0.0)
    assert math.isinf(effective_batch_size(decode, prefill, 300.0, 0.0, 100.0))


def test_predict_splits_load_across_replicas() -> None:
    decode = DecodeParameters(alpha=10.0, beta=2.0)
    prefill = PrefillParameters(gamma=0.0, delta=0.01)
    one = predict(decode, prefill, 300.0, 0.0, 100.0, num_replicas=1)
    three = predict(decode, prefill, 300.0, 0.0, 100.0, num_replicas=3)
    assert one.saturated
    assert not three.saturated
    assert three.batch_size == pytest.approx(2.5)
    assert three.itl_ms == pytest.approx(15.0)
    assert three.ttft_ms == pytest.approx(0.0)


def test_predict_rejects_zero_replicas() -> None:
    decode = DecodeParameters(alpha=10.0, beta=2.0)
    prefill = PrefillParameters(gamma=5.0, delta=0.0)
    with pytest.raises(ValueError):
        predict(decode, prefill, 60.0, 0.0, 100.0, num_replicas=0)
