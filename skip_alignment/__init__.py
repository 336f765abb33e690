#!/usr/bin/env python3
"""
Copyright (c) 2025, Josh Walker

Redistribution and use in source and binary forms, with or without
modification, are permitted provided that the following conditions are met:

1. Redistributions of source code must retain the above copyright notice, this
   list of conditions and the following disclaimer.

2. Redistributions in binary form must reproduce the above copyright notice,
   this list of conditions and the following disclaimer in the documentation
   and/or other materials provided with the distribution.

THIS SOFTWARE IS PROVIDED BY THE COPYRIGHT HOLDERS AND CONTRIBUTORS "AS IS"
AND ANY EXPRESS OR IMPLIED WARRANTIES, INCLUDING, BUT NOT LIMITED TO, THE
IMPLIED WARRANTIES OF MERCHANTABILITY AND FITNESS FOR A PARTICULAR PURPOSE ARE
DISCLAIMED. IN NO EVENT SHALL THE COPYRIGHT HOLDER OR CONTRIBUTORS BE LIABLE
FOR ANY DIRECT, INDIRECT, INCIDENTAL, SPECIAL, EXEMPLARY, OR CONSEQUENTIAL
DAMAGES (INCLUDING, BUT NOT LIMITED TO, PROCUREMENT OF SUBSTITUTE GOODS OR
SERVICES; LOSS OF USE, DATA, OR PROFITS; OR BUSINESS INTERRUPTION) HOWEVER
CAUSED AND ON ANY THEORY OF LIABILITY, WHETHER IN CONTRACT, STRICT LIABILITY,
OR TORT (INCLUDING NEGLIGENCE OR OTHERWISE) ARISING IN ANY WAY OUT OF THE USE
OF THIS SOFTWARE, EVEN IF ADVISED OF THE POSSIBILITY OF SUCH DAMAGE.

Skip-Aware Global Alignment for DNA Sequences

This module aligns a query against a reference that may itself be a row of an
existing multiple sequence alignment. Gap placeholders ('-') already present in
the reference can be skipped for free, while mismatches and bases consumed from
only one of the two sequences each cost 1.

Two engines share one four-state recurrence:
- align_exact: full cost tables with traceback, for inputs that fit in memory
- score_streaming: two rolling rows per state with an optional diagonal band,
  for long inputs where only the score is needed

align_and_score picks between them (and an edlib fast path for references
without placeholders) the way a request handler would.
"""

import logging
import sys
import time
from array import array
from collections import Counter
from dataclasses import dataclass
from enum import IntEnum
from typing import Dict, List, Optional

import edlib

logger = logging.getLogger(__name__)


GAP = '-'
BASES = frozenset('ACGTN')
REFERENCE_ALPHABET = BASES | {GAP}
QUERY_ALPHABET = BASES

# Larger than any real cost (at most m + n) for sequences that fit in memory
UNREACHABLE = sys.maxsize


class SkipAlignmentError(ValueError):
    """Base class for all errors raised by this package."""


class InvalidInputError(SkipAlignmentError):
    """A sequence or transcript contains symbols outside its alphabet, or is empty where required."""


class ResourceLimitExceededError(SkipAlignmentError):
    """An exact alignment was requested whose table size exceeds the configured ceiling."""


class ConfigurationError(SkipAlignmentError):
    """An alignment parameter (band width, ceiling, preview size) is invalid."""


def _validate_limit(value, name):
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise ConfigurationError(f"{name} must be a non-negative integer, got: {value!r}")


class State(IntEnum):
    """DP states. Lower values win ties during traceback."""
    MATCH = 0
    REF_ADVANCE = 1
    QUERY_ADVANCE = 2
    SKIP = 3


# Row/column step back to the predecessor cell for each state
_STEPS = {
    State.MATCH: (1, 1),
    State.REF_ADVANCE: (1, 0),
    State.QUERY_ADVANCE: (0, 1),
    State.SKIP: (1, 0),
}

# Transcript codes and their cost
OPERATION_COSTS = {
    'M': 0,  # match
    'X': 1,  # mismatch
    'I': 1,  # reference advance (reference base against a new gap)
    'D': 1,  # query advance (query base against a new gap)
    'S': 0,  # skip over an existing reference gap
}

MATRIX_NAMES = ('match', 'ref_advance', 'query_advance', 'skip')


@dataclass(frozen=True)
class OperationCounts:
    """Tally of transcript operations.

    Fields:
        matches: 'M' positions
        mismatches: 'X' positions
        ref_advances: 'I' positions (reference base consumed alone)
        query_advances: 'D' positions (query base consumed alone)
        skips: 'S' positions (existing reference gap consumed for free)
        total: Sum of all operations, equal to the transcript length
        penalty: mismatches + ref_advances + query_advances
    """
    matches: int
    mismatches: int
    ref_advances: int
    query_advances: int
    skips: int
    total: int
    penalty: int


@dataclass(frozen=True)
class AlignmentResult:
    """Result of an exact skip-aware alignment.

    Fields:
        score: Total penalty of the optimal alignment
        reference_aligned: Reference with '-' where a query base was consumed alone
        query_aligned: Query with '-' where a reference symbol was consumed alone
        transcript: One of M/X/I/D/S per alignment column
        operations: Counts derived from the transcript
        matrices: Optional top-left preview of the four cost tables, keyed by
                  MATRIX_NAMES; unreachable entries are None
    """
    score: int
    reference_aligned: str
    query_aligned: str
    transcript: str
    operations: OperationCounts
    matrices: Optional[Dict[str, List[List[Optional[int]]]]] = None


@dataclass(frozen=True)
class AlignmentParams:
    """
    Caller-side limits and switches used by align_and_score.

    Attributes:
        max_exact_cells: Largest len(reference) * len(query) for which the exact
                         engine may allocate its tables.
        matrix_preview: Number of rows/columns (beyond row/column 0) kept when
                        cost matrices are requested.
        require_non_empty: Reject empty reference or query as invalid input.
        degrade_to_score_only: When a transcript is requested on input over
                               max_exact_cells, return score-only output instead
                               of raising ResourceLimitExceededError.
        use_edlib: Score gap-free references with edlib's edit distance.
    """
    max_exact_cells: int = 10_000_000
    matrix_preview: int = 12
    require_non_empty: bool = True
    degrade_to_score_only: bool = True
    use_edlib: bool = True

    def __post_init__(self):
        """Validate limits."""
        _validate_limit(self.max_exact_cells, "max_exact_cells")
        _validate_limit(self.matrix_preview, "matrix_preview")


@dataclass(frozen=True)
class AlignmentSummary:
    """Outcome of align_and_score.

    Fields:
        score: Alignment penalty (an upper bound when produced by the banded engine)
        engine: 'exact', 'edlib', 'streaming' or 'banded'
        reference_length: Length of the reference, gap placeholders included
        query_length: Length of the query
        band: Band half-width the banded engine used (the request widened to
              |m - n| when narrower), or None when no band applied
        alignment: Exact alignment when a transcript was requested and computed
        operations: Operation counts when counts were requested and computed
        runtime_ms: Wall time spent aligning
        note: Human-readable explanation of what was (not) computed
    """
    score: int
    engine: str
    reference_length: int
    query_length: int
    band: Optional[int] = None
    alignment: Optional[AlignmentResult] = None
    operations: Optional[OperationCounts] = None
    runtime_ms: float = 0.0
    note: str = ""


DEFAULT_ALIGNMENT_PARAMS = AlignmentParams()


def clean_sequence(seq, allow_gaps=True):
    """
    Uppercase a sequence and drop every character outside the alignment alphabet.

    Whitespace, digits, IUPAC ambiguity codes other than N and any other
    symbol are removed, mirroring the filtering applied when regions are
    read from FASTA files.

    Args:
        seq (str): Raw sequence text
        allow_gaps (bool): Keep '-' placeholders (True for references)

    Returns:
        str: Sequence over {A,C,G,T,N} (plus '-' when allow_gaps)

    Examples:
        >>> clean_sequence('acg t\\n-n')
        'ACGT-N'
        >>> clean_sequence('AC-GT', allow_gaps=False)
        'ACGT'
    """
    alphabet = REFERENCE_ALPHABET if allow_gaps else QUERY_ALPHABET
    return ''.join(c for c in seq.upper() if c in alphabet)


def _check_alphabet(seq, alphabet, label):
    if not isinstance(seq, str):
        raise InvalidInputError(f"{label} must be a str, got: {type(seq).__name__}")
    invalid = set(seq) - alphabet
    if invalid:
        raise InvalidInputError(
            f"{label} contains symbols outside {''.join(sorted(alphabet))}: "
            f"{''.join(sorted(invalid))!r}")


def _validate_sequences(reference, query):
    _check_alphabet(reference, REFERENCE_ALPHABET, "reference")
    _check_alphabet(query, QUERY_ALPHABET, "query")


def _effective_band(band, m, n):
    """Band half-width actually used for an m x n table (None means unbanded)."""
    if band is None:
        return None
    return max(band, abs(m - n))


def _validate_band(band):
    if band is None:
        return
    if isinstance(band, bool) or not isinstance(band, int):
        raise ConfigurationError(f"band must be an integer or None, got: {band!r}")
    if band < 0:
        raise ConfigurationError(f"band must be non-negative, got: {band}")


def count_operations(transcript):
    """
    Count the operations in an alignment transcript.

    Args:
        transcript (str): String over M/X/I/D/S

    Returns:
        OperationCounts: Per-operation counts, their total and the penalty
                         (mismatches + ref advances + query advances)

    Raises:
        InvalidInputError: If the transcript contains any other character
    """
    counts = Counter(transcript)
    unknown = set(counts) - set(OPERATION_COSTS)
    if unknown:
        raise InvalidInputError(
            f"Transcript contains unknown operation codes: {''.join(sorted(unknown))!r}")

    mismatches = counts['X']
    ref_advances = counts['I']
    query_advances = counts['D']
    return OperationCounts(
        matches=counts['M'],
        mismatches=mismatches,
        ref_advances=ref_advances,
        query_advances=query_advances,
        skips=counts['S'],
        total=len(transcript),
        penalty=mismatches + ref_advances + query_advances,
    )


def _matrix_preview(costs, m, n, size):
    """Copy the top-left (size+1) x (size+1) corner of each state's cost table."""
    rows = min(m, size) + 1
    cols = min(n, size) + 1
    width = n + 1
    preview = {}
    for state, name in zip(State, MATRIX_NAMES):
        table = []
        for i in range(rows):
            base = i * width
            row = []
            for j in range(cols):
                value = costs[((base + j) << 2) + state]
                row.append(None if value == UNREACHABLE else value)
            table.append(row)
        preview[name] = table
    return preview


def align_exact(reference, query, with_matrices=False, matrix_preview=None, max_cells=None):
    """
    Optimal skip-aware global alignment with full traceback.

    Fills four (m+1) x (n+1) cost tables (stored as one arena of four-cost
    cells) and a table of the winning state per cell, then walks back from
    (m, n) to (0, 0).

    Costs:
        - Match: 0 (mismatch: 1); illegal where the reference holds '-'
        - Reference advance: 1; illegal where the reference holds '-'
        - Query advance: 1; always legal
        - Skip: 0; legal only where the reference holds '-'

    Among equal-cost states the winner is Match, then reference advance, then
    query advance. Where the reference holds '-', skip wins whenever it is no
    more expensive than a query advance.

    Args:
        reference (str): Reference over {A,C,G,T,N,-}
        query (str): Query over {A,C,G,T,N}
        with_matrices (bool): Attach a preview of the cost tables to the result
        matrix_preview (int, optional): Preview size; defaults to
                                        DEFAULT_ALIGNMENT_PARAMS.matrix_preview
        max_cells (int, optional): Refuse inputs with len(reference) * len(query)
                                   above this; defaults to
                                   DEFAULT_ALIGNMENT_PARAMS.max_exact_cells

    Returns:
        AlignmentResult: Score, aligned strings, transcript and operation counts

    Raises:
        InvalidInputError: If either sequence has symbols outside its alphabet
        ResourceLimitExceededError: If the tables would exceed max_cells
        ConfigurationError: If max_cells or matrix_preview is negative or not an integer

    Example:
        >>> result = align_exact("ATGCG-TAACGTCGAT", "ATGCGTAACGTCGAT")
        >>> result.score, result.transcript
        (0, 'MMMMMSMMMMMMMMMM')
    """
    _validate_sequences(reference, query)
    if max_cells is None:
        max_cells = DEFAULT_ALIGNMENT_PARAMS.max_exact_cells
    if matrix_preview is None:
        matrix_preview = DEFAULT_ALIGNMENT_PARAMS.matrix_preview
    _validate_limit(max_cells, "max_cells")
    _validate_limit(matrix_preview, "matrix_preview")

    m, n = len(reference), len(query)
    if m * n > max_cells:
        raise ResourceLimitExceededError(
            f"Exact alignment of {m} x {n} symbols needs {m * n} cells, "
            f"limit is {max_cells}")

    width = n + 1
    costs = array('q', [UNREACHABLE]) * (4 * (m + 1) * width)
    trace = bytearray(width * (m + 1))

    match_state = State.MATCH
    ref_state = State.REF_ADVANCE
    query_state = State.QUERY_ADVANCE
    skip_state = State.SKIP

    # Row 0: query advances only
    costs[0:4] = array('q', [0, 0, 0, 0])
    prev_best = list(range(width))
    for j in range(1, width):
        costs[(j << 2) + query_state] = j
        trace[j] = query_state

    for i in range(1, m + 1):
        ref_char = reference[i - 1]
        is_gap = ref_char == GAP
        row = i * width
        cur_best = [0] * width

        # Column 0: only the reference is consumed
        base = row << 2
        if is_gap:
            costs[base + skip_state] = prev_best[0]
            cur_best[0] = prev_best[0]
            trace[row] = skip_state
        else:
            costs[base + ref_state] = prev_best[0] + 1
            cur_best[0] = prev_best[0] + 1
            trace[row] = ref_state

        for j in range(1, width):
            base = (row + j) << 2
            query_cost = cur_best[j - 1] + 1
            costs[base + query_state] = query_cost

            if is_gap:
                skip_cost = prev_best[j]
                costs[base + skip_state] = skip_cost
                if skip_cost <= query_cost:
                    best, state = skip_cost, skip_state
                else:
                    best, state = query_cost, query_state
            else:
                match_cost = prev_best[j - 1] + (0 if ref_char == query[j - 1] else 1)
                ref_cost = prev_best[j] + 1
                costs[base + match_state] = match_cost
                costs[base + ref_state] = ref_cost
                best, state = match_cost, match_state
                if ref_cost < best:
                    best, state = ref_cost, ref_state
                if query_cost < best:
                    best, state = query_cost, query_state

            cur_best[j] = best
            trace[row + j] = state

        prev_best = cur_best

    score = prev_best[n]

    reference_cols = []
    query_cols = []
    ops = []
    i, j = m, n
    while i > 0 or j > 0:
        state = trace[i * width + j]
        if state == match_state:
            ref_char, query_char = reference[i - 1], query[j - 1]
            reference_cols.append(ref_char)
            query_cols.append(query_char)
            ops.append('M' if ref_char == query_char else 'X')
        elif state == ref_state:
            reference_cols.append(reference[i - 1])
            query_cols.append(GAP)
            ops.append('I')
        elif state == query_state:
            reference_cols.append(GAP)
            query_cols.append(query[j - 1])
            ops.append('D')
        else:
            reference_cols.append(GAP)
            query_cols.append(GAP)
            ops.append('S')
        di, dj = _STEPS[state]
        i -= di
        j -= dj

    reference_cols.reverse()
    query_cols.reverse()
    ops.reverse()
    transcript = ''.join(ops)

    matrices = _matrix_preview(costs, m, n, matrix_preview) if with_matrices else None

    return AlignmentResult(
        score=score,
        reference_aligned=''.join(reference_cols),
        query_aligned=''.join(query_cols),
        transcript=transcript,
        operations=count_operations(transcript),
        matrices=matrices,
    )


def score_streaming(reference, query, band=None):
    """
    Skip-aware alignment score in O(len(query)) memory.

    Unbanded runs take O(m * n) time; with a band of half-width w only
    O(m * w + n) cells are touched.

    Keeps two rolling rows per state instead of full tables and never builds a
    traceback. With a band of half-width w, row i only evaluates columns
    max(1, i - w) through min(n, i + w); cells outside the corridor stay
    unreachable. The band is widened to |m - n| when narrower, so the final
    cell is always inside it.

    A banded score is never lower than the exact score, and widening the band
    never raises it. With band=None (or band >= max(m, n)) the result equals
    align_exact(reference, query).score.

    Args:
        reference (str): Reference over {A,C,G,T,N,-}
        query (str): Query over {A,C,G,T,N}
        band (int, optional): Band half-width, or None for the full table

    Returns:
        int: Alignment penalty

    Raises:
        InvalidInputError: If either sequence has symbols outside its alphabet
        ConfigurationError: If band is negative or not an integer
    """
    _validate_band(band)
    _validate_sequences(reference, query)

    m, n = len(reference), len(query)
    width = n + 1
    inf = UNREACHABLE

    effective = _effective_band(band, m, n)
    if band is not None and effective != band:
        logger.debug(f"Widening band from {band} to {effective} to reach cell ({m}, {n})")
    band = effective

    match_prev = [inf] * width
    ref_prev = [inf] * width
    query_prev = list(range(width))
    skip_prev = [inf] * width
    match_prev[0] = ref_prev[0] = skip_prev[0] = 0

    # Rows are reused; each row only writes column 0 and its band, so the
    # cells just outside the band are reset before they can be read.
    match_cur = [inf] * width
    ref_cur = [inf] * width
    query_cur = [inf] * width
    skip_cur = [inf] * width

    for i in range(1, m + 1):
        ref_char = reference[i - 1]
        is_gap = ref_char == GAP

        if band is None:
            j_start, j_end = 1, n
        else:
            j_start, j_end = max(1, i - band), min(n, i + band)
            for edge in (j_start - 1, j_end + 1):
                if 0 < edge <= n:
                    match_cur[edge] = ref_cur[edge] = query_cur[edge] = skip_cur[edge] = inf

        above = min(match_prev[0], ref_prev[0], query_prev[0], skip_prev[0])
        match_cur[0] = query_cur[0] = inf
        if is_gap:
            skip_cur[0] = above
            ref_cur[0] = inf
        else:
            ref_cur[0] = above + 1
            skip_cur[0] = inf

        for j in range(j_start, j_end + 1):
            left = min(match_cur[j - 1], ref_cur[j - 1], query_cur[j - 1], skip_cur[j - 1])
            query_cur[j] = left + 1 if left < inf else inf

            above = min(match_prev[j], ref_prev[j], query_prev[j], skip_prev[j])
            if is_gap:
                skip_cur[j] = above
                match_cur[j] = ref_cur[j] = inf
                continue

            diagonal = min(match_prev[j - 1], ref_prev[j - 1], query_prev[j - 1], skip_prev[j - 1])
            if diagonal < inf:
                match_cur[j] = diagonal + (0 if ref_char == query[j - 1] else 1)
            else:
                match_cur[j] = inf
            ref_cur[j] = above + 1 if above < inf else inf
            skip_cur[j] = inf

        match_prev, match_cur = match_cur, match_prev
        ref_prev, ref_cur = ref_cur, ref_prev
        query_prev, query_cur = query_cur, query_prev
        skip_prev, skip_cur = skip_cur, skip_prev

    return min(match_prev[n], ref_prev[n], query_prev[n], skip_prev[n])


def align_and_score(reference, query, want_transcript=False, want_counts=False,
                    band=None, with_matrices=False, params=None):
    """
    Align a query against a reference, choosing the engine by input size.

    Engine selection:
    - Transcript, counts or matrices requested and the input fits under
      params.max_exact_cells: exact alignment (band is ignored)
    - Otherwise score only: edlib edit distance when the reference has no gap
      placeholders and no band is given, else the streaming engine (banded
      when band is given)

    When details are requested on input that is too large, the summary
    falls back to the score alone unless params.degrade_to_score_only is False.

    Args:
        reference (str): Reference over {A,C,G,T,N,-}
        query (str): Query over {A,C,G,T,N}
        want_transcript (bool): Include aligned strings and transcript
        want_counts (bool): Include operation counts
        band (int, optional): Band half-width for the streaming engine
        with_matrices (bool): Include a preview of the exact cost tables
        params (AlignmentParams, optional): Defaults to DEFAULT_ALIGNMENT_PARAMS

    Returns:
        AlignmentSummary: Score, engine name, optional alignment/counts, timing

    Raises:
        InvalidInputError: Bad symbols, or empty input when params.require_non_empty
        ResourceLimitExceededError: Details requested on oversized input without
                                    degrade_to_score_only
        ConfigurationError: Negative or non-integer band

    Example:
        >>> summary = align_and_score("ACGT", "AGT", want_counts=True)
        >>> summary.score, summary.operations.ref_advances
        (1, 1)
    """
    if params is None:
        params = DEFAULT_ALIGNMENT_PARAMS

    _validate_band(band)
    _validate_sequences(reference, query)

    m, n = len(reference), len(query)
    if params.require_non_empty and (m == 0 or n == 0):
        raise InvalidInputError("reference and query are required")

    wants_details = want_transcript or want_counts or with_matrices
    fits_exact = m * n <= params.max_exact_cells

    if wants_details and not fits_exact and not params.degrade_to_score_only:
        raise ResourceLimitExceededError(
            f"Exact alignment of {m} x {n} symbols needs {m * n} cells, "
            f"limit is {params.max_exact_cells}")

    start = time.perf_counter()
    alignment = None
    operations = None

    if wants_details and fits_exact:
        result = align_exact(reference, query, with_matrices=with_matrices,
                             matrix_preview=params.matrix_preview,
                             max_cells=params.max_exact_cells)
        score = result.score
        engine = 'exact'
        if want_transcript or with_matrices:
            alignment = result
        if want_counts:
            operations = result.operations
        note = "Per-position transcript generated with exact DP" if want_transcript \
            else "Exact DP run without transcript"
    else:
        if band is None and params.use_edlib and m and n and GAP not in reference:
            score = edlib.align(query, reference, mode="NW", task="distance")['editDistance']
            engine = 'edlib'
        else:
            score = score_streaming(reference, query, band=band)
            engine = 'streaming' if band is None else 'banded'

        if wants_details:
            logger.debug(f"Skipping exact alignment for {m} x {n} input "
                         f"(limit {params.max_exact_cells} cells)")
            note = "Transcript omitted to keep memory linear on large inputs"
        else:
            note = "Transcript disabled"

    runtime_ms = (time.perf_counter() - start) * 1000.0
    logger.debug(f"Aligned {m} x {n} with {engine} engine in {runtime_ms:.1f} ms (score {score})")

    return AlignmentSummary(
        score=score,
        engine=engine,
        reference_length=m,
        query_length=n,
        band=_effective_band(band, m, n) if engine == 'banded' else None,
        alignment=alignment,
        operations=operations,
        runtime_ms=runtime_ms,
        note=note,
    )


__all__ = [
    'GAP',
    'BASES',
    'REFERENCE_ALPHABET',
    'QUERY_ALPHABET',
    'UNREACHABLE',
    'OPERATION_COSTS',
    'MATRIX_NAMES',
    'SkipAlignmentError',
    'InvalidInputError',
    'ResourceLimitExceededError',
    'ConfigurationError',
    'State',
    'OperationCounts',
    'AlignmentResult',
    'AlignmentParams',
    'AlignmentSummary',
    'DEFAULT_ALIGNMENT_PARAMS',
    'clean_sequence',
    'count_operations',
    'align_exact',
    'score_streaming',
    'align_and_score',
]
