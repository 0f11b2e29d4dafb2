import sys
from pathlib import Path
from unittest.mock import patch

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from merge import build_feed
from records import Note, Photo
from text_match import (
    QueryMode,
    fuzzy_matches,
    fuzzy_score,
    match_notes,
    parse_query,
    substring_matches,
)


def _photo(pid, created_at="2024-01-01T00:00:00+00:00", **kw) -> Photo:
    return Photo(id=pid, image_url=f"http://x/{pid}.jpg", created_at=created_at, **kw)


class TestParseQuery:
    def test_blank_is_no_search(self):
        assert parse_query("   ").mode is QueryMode.NONE

    def test_note_prefix_case_insensitive(self):
        q = parse_query("Note:  Milk ")
        assert q.mode is QueryMode.NOTE
        assert q.term == "milk"

    def test_exact_phrase(self):
        q = parse_query('"Red Shoes"')
        assert q.mode is QueryMode.EXACT
        assert q.term == "red shoes"

    def test_single_quote_char_is_free_text(self):
        assert parse_query('"').mode is QueryMode.FREE

    def test_empty_quotes_are_exact_with_empty_term(self):
        q = parse_query('""')
        assert q.mode is QueryMode.EXACT
        assert q.term == ""

    def test_free_text_lowercased(self):
        q = parse_query("  Cozy Knit ")
        assert q.mode is QueryMode.FREE
        assert q.term == "cozy knit"
        assert q.wants_semantic

    def test_exact_and_note_do_not_want_semantic(self):
        assert not parse_query('"cozy"').wants_semantic
        assert not parse_query("note: cozy").wants_semantic


class TestExactPhrase:
    def test_matches_on_word_boundaries(self):
        photo = _photo("a", caption="i love red shoes today")
        assert substring_matches(parse_query('"red shoes"'), [photo]) == [photo]

    def test_rejects_without_word_boundary(self):
        photo = _photo("a", caption="i love redshoes today")
        assert substring_matches(parse_query('"red shoes"'), [photo]) == []

    def test_metacharacters_are_literal(self):
        photo = _photo("a", caption="axb test")
        assert substring_matches(parse_query('"a.b"'), [photo]) == []

    def test_empty_phrase_returns_everything(self):
        photos = [_photo("a"), _photo("b")]
        assert substring_matches(parse_query('"  "'), photos) == photos

    def test_matches_boolean_tokens(self):
        photo = _photo("a", caption="app", is_screenshot=True)
        assert substring_matches(parse_query('"screenshot"'), [photo]) == [photo]


class TestSubstring:
    def test_matches_dates(self):
        photo = _photo("a", created_at="2024-03-05T10:00:00+00:00")
        assert substring_matches(parse_query("march 5"), [photo]) == [photo]
        assert substring_matches(parse_query("Mar 5, 2024"), [photo]) == [photo]

    def test_matches_tags_and_colors(self):
        photo = _photo("a", tags=["sneakers"], colors=["teal"])
        assert substring_matches(parse_query("tea"), [photo]) == [photo]
        assert substring_matches(parse_query("sneak"), [photo]) == [photo]

    def test_preserves_input_order(self):
        photos = [_photo("b", caption="red"), _photo("a", caption="red")]
        assert substring_matches(parse_query("red"), photos) == photos


class TestFuzzy:
    def test_short_query_never_scores(self):
        photos = [_photo("a", caption="cozy"), _photo("b", tags=["co"])]
        with patch("similarity.similarity") as sim:
            assert fuzzy_matches("co", photos) == []
        sim.assert_not_called()

    def test_substring_hit_scores_one(self):
        assert fuzzy_score("cozy", _photo("a", tags=["cozy", "knit"])) == 1.0

    def test_word_level_similarity(self):
        assert fuzzy_score("cozy", _photo("a", caption="a kozy evening")) == 0.75

    def test_below_threshold_dropped(self):
        assert fuzzy_matches("cozy", [_photo("a", caption="mountain sunrise", tags=["hike"])]) == []

    def test_cozy_scenario(self):
        knit = _photo("knit", created_at="2024-01-01T00:00:00+00:00", tags=["cozy", "knit"])
        kozy = _photo("kozy", created_at="2024-06-01T00:00:00+00:00", caption="a kozy evening")
        other = _photo("other", created_at="2024-03-01T00:00:00+00:00", caption="mountain sunrise", tags=["hike"])
        photos = [kozy, other, knit]

        fuzzy = fuzzy_matches("cozy", photos)
        assert [p.id for p in fuzzy] == ["knit", "kozy"]

        query = parse_query("cozy")
        feed = build_feed(
            query, photos, [], set(),
            fuzzy=fuzzy, fallback=substring_matches(query, photos), semantic=None,
        )
        assert [item.record.id for item in feed] == ["kozy", "knit"]


class TestNotes:
    def test_filters_by_body(self):
        notes = [
            Note(id="1", body="Buy MILK", created_at="2024-01-01T00:00:00+00:00"),
            Note(id="2", body="call mom", created_at="2024-02-01T00:00:00+00:00"),
        ]
        assert [n.id for n in match_notes("milk", notes)] == ["1"]

    def test_empty_term_returns_all_newest_first(self):
        notes = [
            Note(id="1", body="a", created_at="2024-01-01T00:00:00+00:00"),
            Note(id="2", body="b", created_at="2024-02-01T00:00:00+00:00"),
        ]
        assert [n.id for n in match_notes("", notes)] == ["2", "1"]
