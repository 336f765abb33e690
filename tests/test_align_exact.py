#!/usr/bin/env python3
"""
Test suite for the exact skip-aware alignment engine.

Each test documents one behavior of align_exact: scoring, the reported
alignment path, tie-breaking and the boundary cases of empty input.
"""

import random

import pytest
from skip_alignment import (
    align_exact,
    count_operations,
    OPERATION_COSTS,
    InvalidInputError,
    ConfigurationError,
    ResourceLimitExceededError,
    MATRIX_NAMES,
)


def _random_pair(rng, max_len=12):
    reference = ''.join(rng.choice("ACGT-") for _ in range(rng.randint(0, max_len)))
    query = ''.join(rng.choice("ACGTN") for _ in range(rng.randint(0, max_len)))
    return reference, query


class TestGaplessReference:
    """Without placeholders the score is classic unit-cost edit distance."""

    def test_identical(self):
        """Identical sequences align with matches only."""
        result = align_exact("ACGT", "ACGT")
        assert result.score == 0
        assert result.transcript == "MMMM"
        assert result.reference_aligned == "ACGT"
        assert result.query_aligned == "ACGT"

    def test_reference_base_missing_from_query(self):
        """An extra reference base is consumed alone (one 'I')."""
        result = align_exact("ACGT", "AGT")
        assert result.score == 1
        assert result.transcript == "MIMM"
        assert result.reference_aligned == "ACGT"
        assert result.query_aligned == "A-GT"
        assert result.operations.matches == 3

    def test_query_base_missing_from_reference(self):
        """An extra query base is consumed alone (one 'D')."""
        result = align_exact("AGT", "ACGT")
        assert result.score == 1
        assert result.transcript == "MDMM"
        assert result.reference_aligned == "A-GT"
        assert result.query_aligned == "ACGT"

    def test_substitution(self):
        """A single substitution is a mismatch."""
        result = align_exact("ACGT", "AGGT")
        assert result.score == 1
        assert result.transcript == "MXMM"

    def test_n_matches_only_n(self):
        """N is an ordinary symbol: it matches N and mismatches bases."""
        assert align_exact("ANGT", "ANGT").score == 0
        assert align_exact("ANGT", "AAGT").transcript == "MXMM"


class TestSkips:
    """Gap placeholders in the reference are consumed for free."""

    def test_embedded_gap(self):
        """A single embedded placeholder is skipped and everything else matches."""
        result = align_exact("ATGCG-TAACGTCGAT", "ATGCGTAACGTCGAT")
        assert result.score == 0
        assert result.transcript == "MMMMMSMMMMMMMMMM"
        assert result.transcript.count('S') == 1
        assert result.reference_aligned == "ATGCG-TAACGTCGAT"
        assert result.query_aligned == "ATGCG-TAACGTCGAT"

    def test_leading_gaps(self):
        """Leading placeholders are skipped from column 0."""
        result = align_exact("--ACGT", "ACGT")
        assert result.score == 0
        assert result.transcript == "SSMMMM"

    def test_trailing_gaps(self):
        """Trailing placeholders are skipped after the last query base."""
        result = align_exact("ACGT--", "ACGT")
        assert result.score == 0
        assert result.transcript == "MMMMSS"

    @pytest.mark.parametrize("m,n", [(1, 1), (3, 4), (5, 2), (4, 0)])
    def test_all_gap_reference_scores_query_length(self, m, n):
        """An all-placeholder reference costs exactly one query advance per query base."""
        query = "ACGT" * 2
        result = align_exact("-" * m, query[:n])
        assert result.score == n
        assert result.operations.query_advances == n
        assert result.operations.skips == m

    def test_skip_preferred_on_tie(self):
        """Skip wins over an equal-cost query advance at a placeholder cell."""
        result = align_exact("---", "ACGT")
        assert result.transcript == "DDDDSSS"

    def test_query_base_against_placeholder(self):
        """A query base opposite a placeholder cannot match it."""
        result = align_exact("AC-GT", "ACTGT")
        assert result.score == 1
        assert result.transcript == "MMDSMM"
        assert result.reference_aligned == "AC--GT"
        assert result.query_aligned == "ACT-GT"

    def test_gap_after_base_in_column_zero(self):
        """Skipping a placeholder does not cancel the cost of an earlier base."""
        result = align_exact("A-", "")
        assert result.score == 1
        assert result.transcript == "IS"


class TestBoundaries:
    """Empty inputs give degenerate alignments, never errors."""

    def test_empty_reference(self):
        """An empty reference leaves only query advances."""
        result = align_exact("", "ACG")
        assert result.score == 3
        assert result.transcript == "DDD"
        assert result.reference_aligned == "---"
        assert result.query_aligned == "ACG"

    def test_empty_query(self):
        """An empty query leaves only reference advances."""
        result = align_exact("ACG", "")
        assert result.score == 3
        assert result.transcript == "III"
        assert result.reference_aligned == "ACG"
        assert result.query_aligned == "---"

    def test_both_empty(self):
        """Two empty inputs give an empty alignment."""
        result = align_exact("", "")
        assert result.score == 0
        assert result.transcript == ""
        assert result.operations.total == 0


class TestInvariants:
    """Properties that hold for every alignment."""

    @pytest.mark.parametrize("seed", range(20))
    def test_transcript_cost_equals_score(self, seed):
        """Summing the transcript operation costs reproduces the score."""
        reference, query = _random_pair(random.Random(seed))
        result = align_exact(reference, query)
        assert sum(OPERATION_COSTS[op] for op in result.transcript) == result.score
        assert result.operations.penalty == result.score

    @pytest.mark.parametrize("seed", range(20))
    def test_aligned_lengths_agree(self, seed):
        """Aligned strings and transcript all have the same length."""
        reference, query = _random_pair(random.Random(seed))
        result = align_exact(reference, query)
        assert len(result.reference_aligned) == len(result.query_aligned) == len(result.transcript)

    @pytest.mark.parametrize("seed", range(20))
    def test_aligned_strings_restore_inputs(self, seed):
        """Removing inserted gaps gives back the inputs; skips keep the placeholders."""
        reference, query = _random_pair(random.Random(seed))
        result = align_exact(reference, query)
        restored_ref = ''.join(c for c, op in zip(result.reference_aligned, result.transcript)
                               if op != 'D')
        restored_query = ''.join(c for c in result.query_aligned if c != '-')
        assert restored_ref == reference
        assert restored_query == query

    def test_operations_match_transcript(self):
        """The attached counts are those of the transcript."""
        result = align_exact("AC-GTTA", "ACGGTA")
        assert result.operations == count_operations(result.transcript)

    def test_repeatable(self):
        """Repeated calls give byte-identical output."""
        first = align_exact("AC--GTAGGA-C", "ACTTGAGGAC")
        second = align_exact("AC--GTAGGA-C", "ACTTGAGGAC")
        assert first == second


class TestMatrices:
    """Optional preview of the cost tables."""

    def test_not_attached_by_default(self):
        """Matrices are only built on request."""
        assert align_exact("ACGT", "ACGT").matrices is None

    def test_preview_contents(self):
        """Base cases and illegal states show up in the preview."""
        result = align_exact("A-", "AC", with_matrices=True)
        assert set(result.matrices) == set(MATRIX_NAMES)
        match = result.matrices['match']
        skip = result.matrices['skip']
        query_advance = result.matrices['query_advance']
        ref_advance = result.matrices['ref_advance']

        assert len(match) == 3 and len(match[0]) == 3
        # (0, 0) holds zero for every state
        assert [result.matrices[name][0][0] for name in MATRIX_NAMES] == [0, 0, 0, 0]
        # Row 0 only allows query advances
        assert query_advance[0] == [0, 1, 2]
        assert match[0][1:] == [None, None]
        # Placeholder row: match and ref advance unreachable, skip reachable
        assert match[2] == [None, None, None]
        assert ref_advance[2] == [None, None, None]
        assert skip[2] == [1, 0, 1]
        # Base row: skip unreachable
        assert skip[1] == [None, None, None]

    def test_preview_truncated(self):
        """Only the top-left corner is kept for large inputs."""
        result = align_exact("ACGT" * 10, "ACGT" * 10, with_matrices=True, matrix_preview=5)
        for name in MATRIX_NAMES:
            assert len(result.matrices[name]) == 6
            assert all(len(row) == 6 for row in result.matrices[name])


class TestErrors:
    """Input validation and resource limits."""

    @pytest.mark.parametrize("reference,query", [
        ("ACGU", "ACGT"),
        ("acgt", "ACGT"),
        ("ACGT", "AC-T"),
        ("ACGT", "ACRT"),
    ])
    def test_invalid_symbols(self, reference, query):
        """Symbols outside each alphabet are rejected."""
        with pytest.raises(InvalidInputError):
            align_exact(reference, query)

    def test_non_string(self):
        """Non-string input is rejected."""
        with pytest.raises(InvalidInputError, match="must be a str"):
            align_exact(["A", "C"], "AC")

    def test_resource_limit(self):
        """Tables over the ceiling are refused rather than degraded."""
        with pytest.raises(ResourceLimitExceededError, match="16 cells"):
            align_exact("ACGT", "ACGT", max_cells=15)
        assert align_exact("ACGT", "ACGT", max_cells=16).score == 0

    def test_errors_are_value_errors(self):
        """Callers catching ValueError also catch package errors."""
        with pytest.raises(ValueError):
            align_exact("ACGT", "ACGT", max_cells=1)

    @pytest.mark.parametrize("kwargs", [
        {"max_cells": -1},
        {"max_cells": 2.5},
        {"max_cells": True},
        {"matrix_preview": -1},
        {"matrix_preview": "4"},
    ])
    def test_invalid_limits(self, kwargs):
        """Negative or non-integer limits are configuration errors."""
        with pytest.raises(ConfigurationError):
            align_exact("", "", with_matrices=True, **kwargs)
