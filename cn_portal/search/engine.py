# cn_portal/search/engine.py
"""
Fuzzy search over clarification records.

    engine = FuzzySearchEngine()
    resp = engine.search("signl authroity conflikt", corpus, top_k=5)
    resp["results"][0] -> {"id", "score", "record", "highlights"}
    resp["suggestions"] -> up to 3 alternate queries
    resp["stats"] -> {"matchingMs", "totalMs"}

Every call builds its own vocabulary from the corpus it is given; nothing is
kept between calls. Query terms are compared with every distinct corpus
token using rapidfuzz (normalized Indel similarity), prefix hits count as
exact so partial words match. A field's similarity is the mean over query
terms of the best token similarity inside that field. A record matches when
any field reaches the threshold; its score is the best matched field
similarity scaled by that field's weight relative to the heaviest field.

Env vars:
- SEARCH_THRESHOLD (default: 0.6): minimum field similarity in [0, 1]
"""

import os
import re
import time
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np
from rapidfuzz import fuzz, process

from cn_portal.processors.keywords import STOPWORDS
from cn_portal.search.cache import SearchCache, cached

DEFAULT_THRESHOLD = float(os.getenv("SEARCH_THRESHOLD", "0.6"))

# primary text > secondary text > categorical
DEFAULT_FIELD_WEIGHTS: Dict[str, float] = {
    "scenario_steps": 0.40,
    "offshore_comments": 0.15,
    "onsite_comments": 0.15,
    "reason": 0.10,
    "module": 0.08,
    "status": 0.05,
    "priority": 0.04,
    "assigned_to": 0.03,
}

PRIMARY_FIELD = "scenario_steps"

# free-text fields that get highlighted excerpts; categorical fields only score
HIGHLIGHT_FIELDS = ("scenario_steps", "offshore_comments", "onsite_comments", "reason", "module")

# Domain phrasing fixes, applied to the lowercased query
PHRASE_CORRECTIONS: Dict[str, str] = {
    "displayed of": "displayed instead of",
    "authority conflict": "authority conflicts with",
    "signal request": "signal request",
}

# canonical term -> variants rewritten to it (whole words only)
SYNONYMS: Dict[str, List[str]] = {
    "milepost": ["mile post", "mile-post"],
    "authority": ["auth"],
    "signal": ["sig"],
    "conflict": ["conflicts", "conflicting"],
    "display": ["displayed", "displaying", "shows", "shown"],
}

MAX_SUGGESTIONS = 3
EXCERPT_LENGTH = 200
EXCERPT_LEAD = 50
ELLIPSIS = "..."
MIN_TERM_LENGTH = 2
MIN_HIGHLIGHT_LENGTH = 3

_TOKEN_RE = re.compile(r"[^\W_]+", re.UNICODE)


def tokenize(text: str) -> List[str]:
    return [t.lower() for t in _TOKEN_RE.findall(text or "")]


def _text(record: Dict[str, Any], field: str) -> str:
    v = record.get(field)
    return "" if v is None else str(v)


def _ms(seconds: float) -> float:
    return round(seconds * 1000.0, 3)


def _empty_response() -> Dict[str, Any]:
    return {"results": [], "suggestions": [], "stats": {"matchingMs": 0.0, "totalMs": 0.0}}


class FuzzySearchEngine:
    def __init__(
        self,
        field_weights: Optional[Dict[str, float]] = None,
        threshold: float = DEFAULT_THRESHOLD,
        phrase_corrections: Optional[Dict[str, str]] = None,
        synonyms: Optional[Dict[str, List[str]]] = None,
        excerpt_length: int = EXCERPT_LENGTH,
        highlight_tags: Tuple[str, str] = ("<mark>", "</mark>"),
    ):
        self.field_weights = dict(field_weights or DEFAULT_FIELD_WEIGHTS)
        if not self.field_weights or max(self.field_weights.values()) <= 0:
            raise ValueError("field_weights needs at least one positive weight")
        self.fields: List[str] = list(self.field_weights)
        max_w = max(self.field_weights.values())
        self._relative_weights = np.array(
            [self.field_weights[f] / max_w for f in self.fields], dtype=np.float64
        )
        self.threshold = threshold
        self.phrase_corrections = dict(PHRASE_CORRECTIONS if phrase_corrections is None else phrase_corrections)
        self.synonyms = dict(SYNONYMS if synonyms is None else synonyms)
        self.excerpt_length = excerpt_length
        self.highlight_tags = highlight_tags
        self._phrase_patterns = [
            (pattern, re.compile(r"\b" + re.escape(pattern) + r"\b"), replacement)
            for pattern, replacement in self.phrase_corrections.items()
        ]
        self._synonym_patterns = [
            (re.compile(r"\b" + re.escape(variant) + r"\b"), canonical)
            for canonical, variants in self.synonyms.items()
            for variant in variants
        ]

    # ------------------------------------------------------------------
    # Query handling
    # ------------------------------------------------------------------
    def normalize_query(self, query: str) -> str:
        normalized = (query or "").lower().strip()
        for _, regex, replacement in self._phrase_patterns:
            normalized = regex.sub(lambda m, r=replacement: r, normalized, count=1)
        for regex, canonical in self._synonym_patterns:
            normalized = regex.sub(canonical, normalized)
        return normalized

    def query_terms(self, normalized_query: str) -> List[str]:
        tokens = [t for t in tokenize(normalized_query) if len(t) >= MIN_TERM_LENGTH]
        content = [t for t in tokens if t not in STOPWORDS]
        out: List[str] = []
        for t in content or tokens:
            if t not in out:
                out.append(t)
        return out

    # ------------------------------------------------------------------
    # Matching
    # ------------------------------------------------------------------
    def _similarity(self, terms: List[str], vocab: List[str]) -> np.ndarray:
        """terms x vocab similarity in [0, 1]; a vocab token starting with a 3+ char term scores 1."""
        sim = process.cdist(terms, vocab, scorer=fuzz.ratio, dtype=np.float64) / 100.0
        vocab_arr = np.asarray(vocab, dtype=str)
        for i, term in enumerate(terms):
            if len(term) >= 3:
                sim[i, np.char.startswith(vocab_arr, term)] = 1.0
        return sim

    def _tokenize_corpus(self, corpus: Sequence[Dict[str, Any]]) -> Tuple[List[str], np.ndarray]:
        """All tokens, record by record and field by field, plus the token count of every cell."""
        flat: List[str] = []
        lengths: List[int] = []
        seen: Dict[str, List[str]] = {}  # categorical values repeat a lot
        for record in corpus:
            for field in self.fields:
                text = _text(record, field)
                toks = seen.get(text)
                if toks is None:
                    toks = seen[text] = tokenize(text)
                flat.extend(toks)
                lengths.append(len(toks))
        return flat, np.asarray(lengths, dtype=np.int64)

    def _match(self, terms: List[str], corpus: Sequence[Dict[str, Any]]):
        """
        Returns (field_sims, sim, vocab, token_ids, offsets):
          field_sims: records x fields similarity matrix
          sim: terms x vocab token similarity
          token_ids[offsets[c]:offsets[c + 1]]: vocab indices of cell c = record * n_fields + field
        """
        n_fields = len(self.fields)
        field_sims = np.zeros((len(corpus), n_fields), dtype=np.float64)
        flat, lengths = self._tokenize_corpus(corpus)
        offsets = np.concatenate(([0], np.cumsum(lengths)))
        if not flat:
            return field_sims, np.zeros((len(terms), 0)), [], np.zeros(0, dtype=np.int64), offsets

        vocab_arr, token_ids = np.unique(np.asarray(flat, dtype=str), return_inverse=True)
        token_ids = token_ids.ravel()
        vocab = vocab_arr.tolist()
        sim = self._similarity(terms, vocab)

        # best token per term inside every non-empty cell, in one pass
        cells = np.flatnonzero(lengths)
        best = np.maximum.reduceat(sim[:, token_ids], offsets[cells], axis=1)
        field_sims.flat[cells] = best.mean(axis=0)
        return field_sims, sim, vocab, token_ids, offsets

    def _rank(self, field_sims: np.ndarray, top_k: int) -> List[Tuple[int, float]]:
        matched = field_sims >= self.threshold
        weighted = np.where(matched, field_sims * self._relative_weights, 0.0)
        scores = np.clip(weighted.max(axis=1), 0.0, 1.0)
        candidates = np.flatnonzero(matched.any(axis=1))
        order = candidates[np.argsort(-scores[candidates], kind="stable")]
        return [(int(i), float(scores[i])) for i in order[:max(0, top_k)]]

    # ------------------------------------------------------------------
    # Excerpts and highlighting
    # ------------------------------------------------------------------
    def excerpt(self, text: str, terms: Sequence[str]) -> str:
        """Window of at most excerpt_length chars around the first term hit."""
        if not text or len(text) <= self.excerpt_length:
            return text
        words = [t for t in terms if t]
        hit = re.search("|".join(re.escape(w) for w in words), text, re.IGNORECASE) if words else None
        if hit is None:
            return text[:self.excerpt_length] + ELLIPSIS
        start = max(0, hit.start() - EXCERPT_LEAD)
        end = min(len(text), start + self.excerpt_length)
        window = text[start:end]
        if start > 0:
            window = ELLIPSIS + window
        if end < len(text):
            window = window + ELLIPSIS
        return window

    def highlight(self, text: str, terms: Sequence[str]) -> str:
        words = sorted({t for t in terms if len(t) >= MIN_HIGHLIGHT_LENGTH}, key=len, reverse=True)
        if not text or not words:
            return text
        regex = re.compile("|".join(re.escape(w) for w in words), re.IGNORECASE)
        open_tag, close_tag = self.highlight_tags
        return regex.sub(lambda m: f"{open_tag}{m.group(0)}{close_tag}", text)

    def _highlights(self, record: Dict[str, Any], field_sims_row: np.ndarray, per_field: List[np.ndarray],
                    vocab: List[str], token_best: np.ndarray, query_words: List[str]) -> Dict[str, str]:
        out: Dict[str, str] = {}
        for f, field in enumerate(self.fields):
            if field not in HIGHLIGHT_FIELDS or field_sims_row[f] < self.threshold:
                continue
            text = _text(record, field)
            if not text:
                continue
            fuzzy_hits = list(dict.fromkeys(vocab[j] for j in per_field[f] if token_best[j] >= self.threshold))
            terms = list(query_words) + [t for t in fuzzy_hits if t not in query_words]
            out[field] = self.highlight(self.excerpt(text, terms), terms)
        return out

    # ------------------------------------------------------------------
    # Suggestions
    # ------------------------------------------------------------------
    def suggestions(self, query: str, results: List[Dict[str, Any]]) -> List[str]:
        out: List[str] = []
        lowered = query.lower()
        for pattern, regex, replacement in self._phrase_patterns:
            if pattern != replacement and regex.search(lowered) and replacement not in out:
                out.append(replacement)

        if results:
            scenario = _text(results[0]["record"], PRIMARY_FIELD)
            scenario_lower = scenario.lower()
            for word in lowered.split():
                idx = scenario_lower.find(word)
                if idx == -1:
                    continue
                start = max(0, idx - 20)
                end = min(len(scenario), idx + len(word) + 30)
                context = scenario[start:end].strip()
                if context and context not in out and len(context) > len(query):
                    out.append(context)
        return out[:MAX_SUGGESTIONS]

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------
    def search(self, query: str, corpus: Sequence[Dict[str, Any]], top_k: int = 20,
               cache: Optional[SearchCache] = None) -> Dict[str, Any]:
        start = time.perf_counter()
        if not query or not query.strip():
            return _empty_response()

        key = ("fuzzy", query.strip().lower(), top_k)
        resp, hit = cached(cache, key, lambda: self._search(query, corpus, top_k, start))
        if hit:
            resp = dict(resp)
            resp["stats"] = {"matchingMs": 0.0, "totalMs": _ms(time.perf_counter() - start), "cached": True}
        return resp

    def _search(self, query: str, corpus: Sequence[Dict[str, Any]], top_k: int, start: float) -> Dict[str, Any]:
        normalized = self.normalize_query(query)
        terms = self.query_terms(normalized)
        corpus = list(corpus)

        match_start = time.perf_counter()
        if terms and corpus:
            field_sims, sim, vocab, token_ids, offsets = self._match(terms, corpus)
            ranked = self._rank(field_sims, top_k)
        else:
            field_sims, sim, vocab, token_ids, offsets, ranked = None, None, [], None, None, []
        matching_ms = _ms(time.perf_counter() - match_start)

        results: List[Dict[str, Any]] = []
        if ranked:
            n_fields = len(self.fields)
            token_best = sim.max(axis=0)
            query_words = [w for w in tokenize(query.lower()) if len(w) >= MIN_HIGHLIGHT_LENGTH]
            for i, score in ranked:
                record = corpus[i]
                cell = i * n_fields
                per_field = [token_ids[offsets[cell + f]:offsets[cell + f + 1]] for f in range(n_fields)]
                results.append({
                    "id": record.get("id"),
                    "score": score,
                    "record": record,
                    "highlights": self._highlights(record, field_sims[i], per_field,
                                                   vocab, token_best, query_words),
                })

        return {
            "results": results,
            "suggestions": self.suggestions(query, results),
            "stats": {"matchingMs": matching_ms, "totalMs": _ms(time.perf_counter() - start)},
        }


_default_engine: Optional[FuzzySearchEngine] = None


def get_engine() -> FuzzySearchEngine:
    global _default_engine
    if _default_engine is None:
        _default_engine = FuzzySearchEngine()
    return _default_engine
