"""
Copyright © 2025 Merck & Co., Inc., Rahway, NJ, USA and its affiliates. All rights reserved.
This file is part of fastq-index-decoder.

This source code is licensed under the MIT License found in the
LICENSE file in the root directory of this source tree.
"""

import dataclasses
import json
import typing

import pandas as pd

from barcodes import BarcodeTable
from matcher import MatchOutcome, MatchResult

GLOBAL_ROW_NAME = "ALL"


# Dataclass for tracking per-barcode decode statistics
@dataclasses.dataclass(slots=True)
class BarcodeMetric:
    reads: int = 0
    pf_reads: int = 0
    perfect_matches: int = 0
    one_mismatch_matches: int = 0
    other_matches: int = 0
    no_call_rejections: int = 0
    ambiguity_rejections: int = 0
    mismatch_rejections: int = 0

    @property
    def matches(self) -> int:
        return self.perfect_matches + self.one_mismatch_matches + self.other_matches

    def __iadd__(self, other: "BarcodeMetric"):
        for field in dataclasses.fields(self):
            setattr(
                self, field.name, getattr(self, field.name) + getattr(other, field.name)
            )
        return self


class BarcodeMetricRow(typing.NamedTuple):
    barcode_sequence: str
    barcode_name: str
    library_name: str
    reads: int
    pf_reads: int
    perfect_matches: int
    one_mismatch_matches: int
    other_matches: int
    no_call_rejections: int
    ambiguity_rejections: int
    mismatch_rejections: int
    pct_matches: float
    ratio_this_barcode_to_best_barcode_pct: float


def _pct(numerator: int, denominator: int) -> float:
    return 100.0 * numerator / denominator if denominator else 0.0


@dataclasses.dataclass(frozen=True)
class MetricsSummary:
    rows: tuple[BarcodeMetricRow, ...]
    total: BarcodeMetricRow

    @property
    def read_count(self) -> int:
        return self.total.reads

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame([*self.rows, self.total], columns=BarcodeMetricRow._fields)

    def write(self, path: str):
        """Writes the metrics as TSV to path, and as JSON to path + '.json'"""
        self.to_frame().to_csv(path, sep="\t", index=False, float_format="%.4f")
        with open(f"{path}.json", "w") as ofp:
            json.dump(
                {
                    "barcodes": [row._asdict() for row in self.rows],
                    "total": self.total._asdict(),
                },
                ofp,
                indent=2,
            )


class MetricsAccumulator:
    """
    Tallies decode outcomes per barcode ordinal for a single run.
    Once finalized, the accumulator refuses further updates.
    """

    def __init__(self, table: BarcodeTable):
        self.table = table
        self.metrics = [BarcodeMetric() for _ in range(table.num_ordinals)]
        self.summary: MetricsSummary = None

    def update(self, ordinal: int, result: MatchResult):
        if self.summary is not None:
            raise RuntimeError("Metrics have already been finalized")
        metric = self.metrics[ordinal]
        metric.reads += 1
        if result.passing_filter:
            metric.pf_reads += 1
        match result.outcome:
            case MatchOutcome.MATCHED:
                if result.mismatches == 0:
                    metric.perfect_matches += 1
                elif result.mismatches == 1:
                    metric.one_mismatch_matches += 1
                else:
                    metric.other_matches += 1
            case MatchOutcome.TOO_MANY_NO_CALLS:
                metric.no_call_rejections += 1
            case MatchOutcome.AMBIGUOUS:
                metric.ambiguity_rejections += 1
            case MatchOutcome.TOO_MANY_MISMATCHES:
                metric.mismatch_rejections += 1

    def finalize(self) -> MetricsSummary:
        if self.summary is not None:
            return self.summary
        total = BarcodeMetric()
        for metric in self.metrics:
            total += metric
        best = max((metric.reads for metric in self.metrics[1:]), default=0)
        rows = []
        for ordinal, metric in enumerate(self.metrics):
            bc = self.table.barcode(ordinal)
            rows.append(
                BarcodeMetricRow(
                    bc.sequence if bc else "",
                    self.table.display_name(ordinal),
                    bc.library if bc else "",
                    *dataclasses.astuple(metric),
                    _pct(metric.reads, total.reads),
                    _pct(metric.reads, best) if bc else 0.0,
                )
            )
        self.summary = MetricsSummary(
            tuple(rows),
            BarcodeMetricRow(
                "",
                GLOBAL_ROW_NAME,
                "",
                *dataclasses.astuple(total),
                _pct(total.matches, total.reads),
                0.0,
            ),
        )
        return self.summary
