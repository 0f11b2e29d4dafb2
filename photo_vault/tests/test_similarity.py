import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from similarity import levenshtein, similarity


def test_levenshtein_classic():
    assert levenshtein("kitten", "sitting") == 3


def test_levenshtein_empty_sides():
    assert levenshtein("", "abc") == 3
    assert levenshtein("abc", "") == 3


def test_identical_strings_score_one():
    for word in ["a", "cozy", "red shoes"]:
        assert similarity(word, word) == 1.0


def test_two_empty_strings_score_zero():
    assert similarity("", "") == 0.0


def test_one_empty_string_scores_zero():
    assert similarity("", "abc") == 0.0


def test_single_substitution():
    # 1 - 1/4
    assert similarity("cozy", "kozy") == pytest.approx(0.75)


@pytest.mark.parametrize(
    "a, b",
    [("cozy", "kozy"), ("knit", "kitten"), ("", "x"), ("sneakers", "sneaker"), ("red", "blue")],
)
def test_symmetric(a, b):
    assert similarity(a, b) == similarity(b, a)


def test_case_sensitive():
    assert similarity("A", "a") == 0.0


def test_counts_characters_not_bytes():
    assert levenshtein("café", "cafe") == 1
    assert similarity("naïve", "naive") == pytest.approx(0.8)
