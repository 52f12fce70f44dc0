"""
Copyright © 2025 Merck & Co., Inc., Rahway, NJ, USA and its affiliates. All rights reserved.
This file is part of fastq-index-decoder.

This source code is licensed under the MIT License found in the
LICENSE file in the root directory of this source tree.
"""

import dataclasses
import enum
import itertools
import logging
import typing
from functools import lru_cache

from barcodes import UNMATCHED_ORDINAL, BarcodeTable
from libdecode import ConfigError, RecordError, is_no_call


class MatchOutcome(enum.Enum):
    MATCHED = "matched"
    TOO_MANY_NO_CALLS = "too_many_no_calls"
    TOO_MANY_MISMATCHES = "too_many_mismatches"
    AMBIGUOUS = "ambiguous"


class MatchResult(typing.NamedTuple):
    matched: bool
    barcode: str
    mismatches: int
    second_best_mismatches: int
    no_calls: int
    ordinal: int = UNMATCHED_ORDINAL
    outcome: MatchOutcome = MatchOutcome.MATCHED
    passing_filter: bool = True


@dataclasses.dataclass(frozen=True, slots=True)
class MatchConfig:
    max_mismatches: int = 1
    min_mismatch_delta: int = 1
    max_no_calls: int = 2

    def __post_init__(self):
        for field in dataclasses.fields(self):
            value = getattr(self, field.name)
            if not isinstance(value, int) or value < 0:
                raise ConfigError(
                    f"{field.name} must be a non-negative integer, got {value!r}"
                )


def count_mismatches(read: str, barcode: str) -> int:
    """Mismatches between an index read and a barcode, ignoring no-call positions."""
    return sum(r != b and not is_no_call(r) for r, b in zip(read, barcode))


class Matcher:
    def __init__(self, table: BarcodeTable, config: MatchConfig = MatchConfig()):
        self.table = table
        self.config = config
        self.barcode_length = table.barcode_length
        self._sequences = table.sequences

    def classify(self, index_read: str, passing_filter: bool = True) -> MatchResult:
        """
        Classifies an index read against the barcode table.

        A read matches its closest barcode only when the number of no-calls, the number of
        mismatches to that barcode, and the margin over the runner-up barcode are all within
        the configured limits. When two barcodes are equally close, the first in table order
        is reported as closest, but the zero margin means the read is rejected as ambiguous.

        :param index_read: The index bases of the read. Only the first barcode_length bases are used.
        :param passing_filter: Whether the read passed the sequencer's chastity filter
        :return: A MatchResult. Unmatched reads report an empty barcode and ordinal 0.
        :raises RecordError: if the index read is shorter than the barcodes
        """
        if len(index_read) < self.barcode_length:
            raise RecordError(
                f"Index read {index_read!r} is shorter than the barcode length {self.barcode_length}",
                stage="classify",
            )
        result = self._classify(index_read[: self.barcode_length].upper())
        return result if passing_filter else result._replace(passing_filter=False)

    @lru_cache(4096)
    def _classify(self, read: str) -> MatchResult:
        config = self.config
        no_calls = sum(map(is_no_call, read))
        if no_calls > config.max_no_calls:
            return MatchResult(
                False, "", -1, -1, no_calls, outcome=MatchOutcome.TOO_MANY_NO_CALLS
            )

        best_idx = -1
        best = second_best = self.barcode_length + 1
        for i, candidate in enumerate(self._sequences):
            mismatches = count_mismatches(read, candidate)
            if mismatches < best:
                best_idx, second_best, best = i, best, mismatches
            elif mismatches < second_best:
                second_best = mismatches
        if len(self._sequences) == 1:
            second_best = best + config.min_mismatch_delta

        if best > config.max_mismatches:
            outcome = MatchOutcome.TOO_MANY_MISMATCHES
        elif second_best - best < config.min_mismatch_delta:
            outcome = MatchOutcome.AMBIGUOUS
        else:
            return MatchResult(
                True,
                self._sequences[best_idx],
                best,
                second_best,
                no_calls,
                best_idx + 1,
                MatchOutcome.MATCHED,
            )
        return MatchResult(False, "", best, second_best, no_calls, outcome=outcome)

    def check_collisions(self) -> bool:
        """
        Warns about every pair of barcodes that are close enough for a read with the maximum
        number of mismatches to sit between them.

        :return: True if any pair of barcodes is too close
        """
        logger = logging.getLogger("BCcheck")
        limit = 2 * self.config.max_mismatches
        too_close = False
        for (i, a), (j, b) in itertools.combinations(enumerate(self._sequences, 1), 2):
            if (distance := count_mismatches(a, b)) <= limit:
                logger.warning(
                    "Barcodes %d (%s) and %d (%s) are too close! (%d substitution distance)",
                    i,
                    a,
                    j,
                    b,
                    distance,
                )
                too_close = True
        return too_close
