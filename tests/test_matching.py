import pytest

from subdivx_subtitles.matching import rank_candidates, score, tokenize
from subdivx_subtitles.sources.subdivx import SearchCandidate


pytestmark = pytest.mark.matching


def test_tokenize_empty():
    assert tokenize("") == []


def test_tokenize_strips_punctuation_and_lowercases():
    assert tokenize("Hello, World!") == ["hello", "world"]


def test_tokenize_dedupes_preserving_order():
    assert tokenize("hello hello world") == ["hello", "world"]
    assert tokenize("b a b c a") == ["b", "a", "c"]


def test_tokenize_collapses_separator_runs():
    assert tokenize("The.Show--S01E01...720p") == ["the", "show", "s01e01", "720p"]


def test_tokenize_non_ascii_letters_are_separators():
    # only [a-zA-Z0-9] survive; accented letters split words
    assert tokenize("Canción Año") == ["canci", "n", "a", "o"]


def test_score_counts_matching_query_tokens():
    assert score(["hello", "world"], "HELLO world") == 2


def test_score_empty_query_is_zero():
    assert score(["hello", "world"], "") == 0


def test_score_absent_token_contributes_nothing():
    assert score(["hello", "world"], "hello there") == 1


def test_score_repeated_query_word_counts_once():
    assert score(["my", "show", "s01e01"], "my.show.S01E01.my.show") == 3


def test_rank_puts_episode_match_first():
    weak = SearchCandidate.from_row(1, "My Show", "")
    strong = SearchCandidate.from_row(2, "My Show", "S01E01")
    assert strong.description_tokens == ("my", "show", "s01e01")

    ranked = rank_candidates([weak, strong], "S01E01")
    assert [c.id for c, _ in ranked] == [2, 1]
    assert [s for _, s in ranked] == [1, 0]


def test_rank_is_stable_for_ties():
    rows = [SearchCandidate.from_row(i, "Same title", "web-dl") for i in (5, 3, 9, 1)]
    ranked = rank_candidates(rows, "same.title.web-dl.mkv")
    assert [c.id for c, _ in ranked] == [5, 3, 9, 1]


def test_rank_mixed_scores_keep_upstream_order_within_groups():
    rows = [
        SearchCandidate.from_row(10, "Dark", "version web"),
        SearchCandidate.from_row(11, "Dark", "bluray x264"),
        SearchCandidate.from_row(12, "Dark", "web x264"),
        SearchCandidate.from_row(13, "Dark", "bluray"),
    ]
    ranked = rank_candidates(rows, "Dark.S01E01.BluRay.x264")
    assert [(c.id, s) for c, s in ranked] == [(11, 3), (12, 2), (13, 2), (10, 1)]
