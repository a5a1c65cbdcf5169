"""Unit Tests — tokenizer and in-memory BM25 ranking."""

from __future__ import annotations

import uuid

import pytest

from docindex.indexing.bm25 import Candidate, ChunkBM25Index, tokenize

DOC_A = uuid.UUID("aaaaaaaa-aaaa-aaaa-aaaa-aaaaaaaaaaaa")
DOC_B = uuid.UUID("bbbbbbbb-bbbb-bbbb-bbbb-bbbbbbbbbbbb")


@pytest.mark.unit
class TestTokenize:

    def test_lowercases_strips_punctuation_and_stopwords(self):
        assert tokenize("The Quick, brown-fox jumps!") == ["quick", "brown-fox", "jumps"]

    def test_only_stopwords(self):
        assert tokenize("the and of") == []


@pytest.mark.unit
class TestChunkBM25Index:

    @pytest.fixture
    def index(self):
        return ChunkBM25Index([
            Candidate(DOC_A, 0, "Soil moisture sensors were calibrated in the field."),
            Candidate(DOC_A, 1, "Calibration drift was corrected weekly."),
            Candidate(DOC_B, 0, "Moisture moisture moisture readings from the soil probe."),
            Candidate(DOC_B, 1, "Unrelated budget discussion."),
        ])

    def test_only_matching_chunks_returned(self, index):
        hits = index.search("moisture")

        assert {(h.candidate.document_id, h.candidate.ordinal) for h in hits} == {(DOC_A, 0), (DOC_B, 0)}

    def test_higher_term_frequency_ranks_first(self, index):
        hits = index.search("moisture")

        assert hits[0].candidate.document_id == DOC_B
        assert hits[0].score >= hits[1].score

    def test_top_k_limits_results(self, index):
        assert len(index.search("moisture soil calibrated", top_k=1)) == 1

    def test_no_match(self, index):
        assert index.search("astronomy") == []

    def test_stopword_query(self, index):
        assert index.search("the of") == []

    def test_deterministic_order_for_equal_scores(self):
        index = ChunkBM25Index([
            Candidate(DOC_B, 0, "identical text"),
            Candidate(DOC_A, 1, "identical text"),
            Candidate(DOC_A, 0, "identical text"),
        ])

        hits = index.search("identical")

        assert [(h.candidate.document_id, h.candidate.ordinal) for h in hits] == [
            (DOC_A, 0),
            (DOC_A, 1),
            (DOC_B, 0),
        ]

    def test_empty_corpus_rejected(self):
        with pytest.raises(ValueError):
            ChunkBM25Index([])
