# tests/test_search_engine.py
import re

import pytest

from cn_portal.search.engine import FuzzySearchEngine, ELLIPSIS, EXCERPT_LENGTH
from cn_portal.search.cache import SearchCache


def rec(id_, scenario, module="", **extra):
    r = {"id": id_, "scenario_steps": scenario, "module": module}
    r.update(extra)
    return r


CORPUS = [
    rec("r1", "Signal request rejected when authority conflicts with track warrant", "Dispatch"),
    rec("r2", "Train consist displayed instead of expected speed restriction", "Onboard"),
    rec("r3", "Crew login fails after password reset", "Crew"),
]


class ExplodingCorpus:
    def __iter__(self):
        raise AssertionError("corpus must not be read")

    def __len__(self):
        raise AssertionError("corpus must not be read")


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


@pytest.fixture
def engine():
    return FuzzySearchEngine()


@pytest.mark.parametrize("query", ["", "   ", "\t\n"])
def test_empty_query_short_circuits(engine, query):
    resp = engine.search(query, ExplodingCorpus())
    assert resp["results"] == []
    assert resp["suggestions"] == []
    assert set(resp["stats"]) >= {"matchingMs", "totalMs"}


def test_typos_still_find_record(engine):
    resp = engine.search("signl authroity", CORPUS)
    assert resp["results"], "expected a fuzzy hit"
    top = resp["results"][0]
    assert top["id"] == "r1"
    assert 0.0 < top["score"] <= 1.0
    assert "scenario_steps" in top["highlights"]


def test_exact_terms_rank_their_record_first(engine):
    resp = engine.search("crew login", CORPUS)
    assert resp["results"][0]["id"] == "r3"
    assert resp["results"][0]["score"] == pytest.approx(1.0)


def test_primary_field_outweighs_categorical_field(engine):
    corpus = [
        rec("module-only", "Nothing relevant in here", "Dispatch"),
        rec("scenario", "Dispatch screen freezes on refresh", "Onboard"),
    ]
    resp = engine.search("dispatch", corpus)
    ids = [r["id"] for r in resp["results"]]
    assert ids == ["scenario", "module-only"]
    assert resp["results"][0]["score"] > resp["results"][1]["score"]


def test_ties_keep_corpus_order(engine):
    a = rec("a", "Bulletin not delivered to crew", "Bulletins")
    b = rec("b", "Bulletin not delivered to crew", "Bulletins")
    assert [r["id"] for r in engine.search("bulletin", [a, b])["results"]] == ["a", "b"]
    assert [r["id"] for r in engine.search("bulletin", [b, a])["results"]] == ["b", "a"]


def test_top_k_caps_results(engine):
    corpus = [rec(f"r{i}", f"Bulletin {i} not delivered") for i in range(10)]
    assert len(engine.search("bulletin", corpus, top_k=3)["results"]) == 3


def test_nothing_above_threshold_returns_empty():
    strict = FuzzySearchEngine(threshold=0.99)
    resp = strict.search("signl authroity", CORPUS)
    assert resp["results"] == []


def test_highlight_is_bounded_excerpt_with_marks(engine):
    long_text = "Step " * 100 + "authority check failed " + "tail " * 100
    resp = engine.search("authority", [rec("long", long_text)])
    hl = resp["results"][0]["highlights"]["scenario_steps"]
    assert "<mark>authority</mark>" in hl
    plain = re.sub(r"</?mark>", "", hl)
    assert len(plain) <= EXCERPT_LENGTH + 2 * len(ELLIPSIS)
    assert plain.startswith(ELLIPSIS) and plain.endswith(ELLIPSIS)


def test_highlight_only_for_matched_fields(engine):
    corpus = [rec("x", "Crew login fails", "Dispatch", reason="unrelated words entirely")]
    hl = engine.search("crew login", corpus)["results"][0]["highlights"]
    assert set(hl) == {"scenario_steps"}


def test_excerpt_short_text_unchanged(engine):
    assert engine.excerpt("short text", ["text"]) == "short text"


def test_suggestions_from_phrase_correction_and_context(engine):
    resp = engine.search("displayed of speed", CORPUS)
    assert resp["results"][0]["id"] == "r2"
    suggestions = resp["suggestions"]
    assert suggestions[0] == "displayed instead of"
    assert 1 <= len(suggestions) <= 3


def test_cache_serves_repeat_queries_until_ttl(engine):
    clock = FakeClock()
    cache = SearchCache(ttl_seconds=60, clock=clock)

    first = engine.search("crew login", CORPUS, cache=cache)
    assert not first["stats"].get("cached")

    second = engine.search("  Crew Login ", ExplodingCorpus(), cache=cache)
    assert second["stats"]["cached"] is True
    assert [r["id"] for r in second["results"]] == [r["id"] for r in first["results"]]

    clock.now += 61
    third = engine.search("crew login", CORPUS, cache=cache)
    assert not third["stats"].get("cached")


def test_empty_weights_rejected():
    with pytest.raises(ValueError):
        FuzzySearchEngine(field_weights={"scenario_steps": 0.0})


def test_categorical_match_scores_without_excerpt(engine):
    resp = engine.search("deferred", [rec("s", "Nothing here", status="Deferred")])
    result = resp["results"][0]
    assert result["score"] == pytest.approx(0.05 / 0.40)
    assert result["highlights"] == {}


def test_three_typos_still_recall(engine):
    resp = engine.search("signl authroity conflikt", [rec("r", "signal authority conflict")])
    assert resp["results"][0]["id"] == "r"
    assert resp["results"][0]["score"] > 0


def test_prefix_of_a_token_counts_as_exact(engine):
    top = engine.search("warr", CORPUS)["results"][0]
    assert top["id"] == "r1"
    assert top["score"] == pytest.approx(1.0)


def test_phrase_correction_respects_word_boundaries(engine):
    assert engine.normalize_query("authority conflicts") == "authority conflict"
    assert "withs" not in engine.query_terms(engine.normalize_query("authority conflicts"))
    top = engine.search("authority conflicts", CORPUS)["results"][0]
    assert top["id"] == "r1"
    assert top["score"] == pytest.approx(1.0)


def test_excerpt_window_follows_original_text_offsets(engine):
    # "İ".lower() is two code points; offsets must come from the original text
    text = "İ" * 120 + " authority check failed " + "tail " * 60
    out = engine.excerpt(text, ["authority"])
    assert "authority" in out
    assert out.startswith(ELLIPSIS)


def test_typeahead_latency_on_a_few_thousand_records(engine):
    words = ["train", "halts", "warrant", "track", "crew", "bulletin",
             "speed", "restriction", "dispatch", "onboard", "display", "rejected", "request",
             "milepost", "siding", "switch", "block", "consist", "terminal", "yard", "limit"]
    corpus = [
        rec(f"r{i}", " ".join(words[(i * 7 + j * 3) % len(words)] for j in range(30)),
            module=words[i % 5], status="Open" if i % 3 else "Closed", priority=f"P{i % 3 + 1}")
        for i in range(3000)
    ]
    corpus.append(rec("needle", "Signal authority lost near siding", "Dispatch"))
    engine.search("warmup", corpus[:10])
    resp = engine.search("signl authroity", corpus)
    assert resp["results"][0]["id"] == "needle"
    assert resp["stats"]["matchingMs"] < 500
