"""Tests for the seeded LCG and string hash."""

import pytest

from autoplay.rng import DeterministicRNG, MODULUS, hash_string


def test_hash_matches_polynomial_fold():
    assert hash_string("") == 0
    assert hash_string("a") == 97
    assert hash_string("ab") == 97 * 31 + 98
    assert hash_string("abc") == (97 * 31 + 98) * 31 + 99


def test_hash_wraps_unsigned():
    value = hash_string("x" * 200)
    assert 0 <= value < MODULUS


def test_hash_uses_utf16_units_for_astral_characters():
    # U+1F600 is the surrogate pair D83D DE00
    assert hash_string("\U0001F600") == (0xD83D * 31 + 0xDE00) & 0xFFFFFFFF


def test_hash_accepts_lone_surrogates():
    # Strings decoded from JSON may carry an unpaired surrogate unit
    assert hash_string("\ud800") == 0xD800
    assert hash_string("w\ud800") == 119 * 31 + 0xD800
    rng = DeterministicRNG("world\ud800:adv")
    assert rng.next() == DeterministicRNG("world\ud800:adv").next()


def test_first_value_follows_lcg_recurrence():
    rng = DeterministicRNG("abc")
    expected_state = (hash_string("abc") * 1664525 + 1013904223) % MODULUS
    assert rng.next() == expected_state / MODULUS
    assert rng.state == expected_state


def test_same_seed_reproduces_sequence():
    first = DeterministicRNG("abc")
    second = DeterministicRNG("abc")
    values = [first.next_int(0, 9) for _ in range(5)]
    assert values == [second.next_int(0, 9) for _ in range(5)]
    assert all(0 <= value <= 9 for value in values)


def test_different_seeds_diverge():
    first = [DeterministicRNG("seed-a").next() for _ in range(3)]
    second = [DeterministicRNG("seed-b").next() for _ in range(3)]
    assert first != second


def test_next_int_rejects_empty_range():
    with pytest.raises(ValueError):
        DeterministicRNG("x").next_int(5, 4)


def test_choose_handles_empty_and_single():
    rng = DeterministicRNG("x")
    assert rng.choose([]) is None
    assert rng.choose(["only"]) == "only"


def test_weighted_choose_skips_zero_weights():
    rng = DeterministicRNG("weights")
    picks = {rng.weighted_choose([("never", 0.0), ("always", 1.0)]) for _ in range(20)}
    assert picks == {"always"}


def test_weighted_choose_without_positive_weight():
    rng = DeterministicRNG("weights")
    assert rng.weighted_choose([]) is None
    assert rng.weighted_choose([("a", 0.0)]) is None
