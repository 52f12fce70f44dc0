import json
import os
import pathlib
import random
import sys
import tempfile
import unittest

import pandas as pd

project_root = pathlib.Path(__file__).parent.parent.parent
sys.path.insert(0, str(project_root / "bin"))
import barcodes
import matcher
import metrics
from matcher import MatchConfig


class MetricsTest(unittest.TestCase):
    def setUp(self):
        self.table = barcodes.BarcodeTable(
            [
                barcodes.CandidateBarcode("ATCACG", "A1", "lib1"),
                barcodes.CandidateBarcode("CGATGT", "B1", "lib2"),
            ]
        )
        self.matcher = matcher.Matcher(self.table, MatchConfig(1, 1, 0))
        self.accumulator = metrics.MetricsAccumulator(self.table)

    def tally(self, index_read, passing_filter=True):
        result = self.matcher.classify(index_read, passing_filter)
        self.accumulator.update(result.ordinal, result)

    def test_counters(self):
        for read in ("ATCACG", "ATCACG", "ATCACC", "CGATGT", "ANCACG", "GGGGGG"):
            self.tally(read)
        self.tally("CGATGT", passing_filter=False)
        summary = self.accumulator.finalize()
        unmatched, a1, b1 = summary.rows
        self.assertEqual((a1.reads, a1.perfect_matches, a1.one_mismatch_matches), (3, 2, 1))
        self.assertEqual((b1.reads, b1.pf_reads, b1.perfect_matches), (2, 1, 2))
        self.assertEqual(unmatched.reads, 2)
        self.assertEqual(unmatched.no_call_rejections, 1)
        self.assertEqual(unmatched.mismatch_rejections, 1)
        self.assertEqual(unmatched.barcode_name, "0")
        self.assertEqual(a1.barcode_name, "A1")
        self.assertEqual(a1.library_name, "lib1")
        self.assertEqual(summary.read_count, 7)
        self.assertEqual(summary.total.barcode_name, metrics.GLOBAL_ROW_NAME)
        self.assertAlmostEqual(summary.total.pct_matches, 500 / 7)
        self.assertAlmostEqual(a1.pct_matches, 300 / 7)
        self.assertAlmostEqual(a1.ratio_this_barcode_to_best_barcode_pct, 100.0)
        self.assertAlmostEqual(b1.ratio_this_barcode_to_best_barcode_pct, 200 / 3)

    def test_ambiguity(self):
        table = barcodes.BarcodeTable.from_sequences(["AAAAAA", "AAAACC"])
        m = matcher.Matcher(table, MatchConfig(2, 1, 0))
        accumulator = metrics.MetricsAccumulator(table)
        result = m.classify("AAAAAC")
        accumulator.update(result.ordinal, result)
        result = m.classify("AATAAG")
        accumulator.update(result.ordinal, result)
        summary = accumulator.finalize()
        self.assertEqual(summary.rows[0].ambiguity_rejections, 1)
        self.assertEqual(summary.rows[1].other_matches, 1)

    def test_bucket_invariant(self):
        rng = random.Random(42)
        n = 500
        for _ in range(n):
            self.tally("".join(rng.choices("ACGTN", weights=[5, 5, 5, 5, 1], k=6)))
        summary = self.accumulator.finalize()
        for row in (*summary.rows, summary.total):
            self.assertEqual(
                row.perfect_matches
                + row.one_mismatch_matches
                + row.other_matches
                + row.no_call_rejections
                + row.ambiguity_rejections
                + row.mismatch_rejections,
                row.reads,
            )
        self.assertEqual(sum(row.reads for row in summary.rows), n)
        self.assertEqual(summary.total.reads, n)

    def test_empty_run(self):
        summary = self.accumulator.finalize()
        self.assertEqual(summary.read_count, 0)
        self.assertEqual(summary.total.pct_matches, 0.0)

    def test_finalized(self):
        self.tally("ATCACG")
        summary = self.accumulator.finalize()
        with self.assertRaises(RuntimeError):
            self.tally("ATCACG")
        self.assertIs(self.accumulator.finalize(), summary)
        self.assertEqual(summary.total.reads, 1)

    def test_write(self):
        self.tally("ATCACG")
        self.tally("GGGGGG")
        summary = self.accumulator.finalize()
        with tempfile.TemporaryDirectory() as tmpdir:
            path = os.path.join(tmpdir, "metrics.txt")
            summary.write(path)
            df = pd.read_csv(path, sep="\t", keep_default_na=False)
            with open(f"{path}.json") as fp:
                report = json.load(fp)
        self.assertEqual(list(df.columns), list(metrics.BarcodeMetricRow._fields))
        self.assertEqual(df.barcode_name.tolist(), ["0", "A1", "B1", "ALL"])
        self.assertEqual(df.reads.tolist(), [1, 1, 0, 2])
        self.assertEqual(report["total"]["reads"], 2)
        self.assertEqual(report["barcodes"][1]["barcode_sequence"], "ATCACG")


if __name__ == "__main__":
    unittest.main()
