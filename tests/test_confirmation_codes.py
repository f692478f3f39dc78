"""Tests for confirmation code generation and lookup normalization."""
import pytest

from pickup_api.services.confirmation_codes import (
    UNAMBIGUOUS_ALPHABET, candidate_codes, generate_confirmation_code,
    normalize_confirmation_code,
)


def test_generated_codes_use_prefix_and_unambiguous_alphabet():
    code = generate_confirmation_code()
    prefix, body = code.split('-')
    assert prefix == 'LP'
    assert len(body) == 12
    assert set(body) <= set(UNAMBIGUOUS_ALPHABET)
    assert not set('01OIL') & set(UNAMBIGUOUS_ALPHABET)


def test_generated_codes_do_not_repeat():
    codes = {generate_confirmation_code() for _ in range(2000)}
    assert len(codes) == 2000


def test_custom_prefix_and_length():
    assert generate_confirmation_code(prefix='', length=8).isalnum()
    assert generate_confirmation_code(prefix='XY', length=6).startswith('XY-')
    with pytest.raises(ValueError):
        generate_confirmation_code(length=4)


def test_normalize_and_candidates():
    assert normalize_confirmation_code('  lp-abc  ') == 'LP-ABC'
    assert normalize_confirmation_code('') is None
    assert normalize_confirmation_code('X' * 40) is None

    assert candidate_codes('lp-abcdefgh') == ['LP-ABCDEFGH']
    assert candidate_codes('abcdefgh') == ['ABCDEFGH', 'LP-ABCDEFGH']
    assert candidate_codes(None) == []
