#!/usr/bin/env python

"""
Copyright © 2025 Merck & Co., Inc., Rahway, NJ, USA and its affiliates. All rights reserved.
This file is part of fastq-index-decoder.

This source code is licensed under the MIT License found in the
LICENSE file in the root directory of this source tree.
"""

import argparse
import dataclasses
import enum
import logging
import os
import re
import shlex
import sys
import typing
from collections.abc import Iterator

import pysam

from barcodes import BarcodeTable
from libdecode import ConfigError, RecordError
from matcher import MatchConfig, Matcher, MatchResult
from metrics import MetricsAccumulator, MetricsSummary
from quality import QualityFormat, phred_to_fastq, reencode
from router import DemuxRouter, Merged, OutputMode, OutputRecord, output_mode
from version import __version__

PROGRAM_NAME = "FastqIndexDecoder"
PROGRAM_DESCRIPTION = "A command-line tool to decode multiplexed fastq files"
# Casava 1.8 comment, e.g. "1:N:0:ATCACG"; Y in the second field marks a filtered read
CASAVA_COMMENT = re.compile(r"^[12]:([YN]):\d+:")
MATE_SUFFIX = re.compile(r"/[12]$")


class EngineState(enum.Enum):
    IDLE = "idle"
    CONFIGURING = "configuring"
    STREAMING = "streaming"
    FINALIZING = "finalizing"
    DONE = "done"
    FAILED = "failed"


@dataclasses.dataclass(frozen=True, slots=True)
class ReadGroupInfo:
    read_group_id: str = "1"
    library_name: str = "unknown"
    sample_alias: str = None
    study_name: str = None
    platform_unit: str = None
    run_start_date: str = None
    sequencing_center: str = "SC"
    platform: str = "ILLUMINA"

    def record(self, table: BarcodeTable, ordinal: int) -> dict[str, str]:
        """
        Builds the read group header record for one barcode ordinal.
        Library, sample and description given for the barcode take precedence.
        """
        name = table.display_name(ordinal)
        bc = table.barcode(ordinal)
        rg = {
            "ID": f"{self.read_group_id}#{name}",
            "LB": self.library_name,
            "SM": self.sample_alias or self.library_name,
            "PL": self.platform,
            "CN": self.sequencing_center,
        }
        if self.study_name:
            rg["DS"] = f"Study {self.study_name}"
        if self.platform_unit:
            rg["PU"] = f"{self.platform_unit}#{name}"
        if self.run_start_date:
            rg["DT"] = self.run_start_date
        if bc is not None:
            if bc.library:
                rg["LB"] = bc.library
            if bc.sample:
                rg["SM"] = bc.sample
            if bc.description:
                rg["DS"] = bc.description
        return rg


def sam_header(read_groups: list[dict[str, str]]) -> dict:
    return {
        "HD": {"VN": "1.6", "SO": "unsorted"},
        "RG": read_groups,
        "PG": [
            {
                "ID": PROGRAM_NAME,
                "PN": PROGRAM_NAME,
                "VN": __version__,
                "DS": PROGRAM_DESCRIPTION,
                "CL": shlex.join(sys.argv),
            }
        ],
    }


def passes_filter(comment: str | None) -> bool:
    if comment and (m := CASAVA_COMMENT.match(comment)):
        return m[1] == "N"
    return True


def iter_reads(
    fastq1: str, fastq2: str = None
) -> Iterator[tuple[pysam.FastxRecord, pysam.FastxRecord | None]]:
    """
    Yields reads from one FASTQ, or mates from two FASTQ files in lockstep.
    :raises RecordError: if one of two paired files ends before the other
    """
    with pysam.FastxFile(fastq1, persist=False) as fq1:
        if fastq2 is None:
            for r1 in fq1:
                yield r1, None
            return
        with pysam.FastxFile(fastq2, persist=False) as fq2:
            it2 = iter(fq2)
            for r1 in fq1:
                r2 = next(it2, None)
                if r2 is None:
                    raise RecordError(
                        "Second fastq file ended before the first", r1.name, "extract"
                    )
                yield r1, r2
            if (r2 := next(it2, None)) is not None:
                raise RecordError(
                    "First fastq file ended before the second", r2.name, "extract"
                )


class DecodeEngine:
    """
    Decodes the index of every read in one run and routes it to its output.

    Per read: extract the index bases, classify them, re-encode the qualities, annotate the
    output records, dispatch them and tally the outcome. Only the current read (pair) is held
    in memory.
    """

    def __init__(
        self,
        table: BarcodeTable,
        mode: OutputMode,
        *,
        match_config: MatchConfig = MatchConfig(),
        quality_format: QualityFormat = QualityFormat.STANDARD,
        read_group: ReadGroupInfo = ReadGroupInfo(),
        barcode_tag: str = "BC",
        strict_pairs: bool = False,
        check_barcodes: bool = False,
    ):
        """
        :param table: Candidate barcodes
        :param mode: Where to write decoded reads
        :param match_config: Mismatch, mismatch delta and no-call limits
        :param quality_format: Encoding of the input quality strings
        :param read_group: Values for the read group header records
        :param barcode_tag: Tag holding the trimmed index bases
        :param strict_pairs: If True, mates must share a read name and index bases
        :param check_barcodes: If True, warn about barcodes that are too close for match_config
        """
        self.state = EngineState.IDLE
        self.table = table
        self.mode = mode
        self.match_config = match_config
        self.quality_format = quality_format
        self.read_group = read_group
        self.barcode_tag = barcode_tag
        self.strict_pairs = strict_pairs
        self.check_barcodes = check_barcodes
        self.barcode_length = table.barcode_length
        self.names = [table.display_name(i) for i in range(table.num_ordinals)]
        self.read_groups = [
            f"{read_group.read_group_id}#{name}" for name in self.names
        ]
        self.matcher: Matcher = None
        self.router: DemuxRouter = None
        self.metrics: MetricsAccumulator = None

    def headers(self) -> list[dict]:
        records = [self.read_group.record(self.table, i) for i in range(len(self.names))]
        if isinstance(self.mode, Merged):
            return [sam_header(records)]
        return [sam_header([rg]) for rg in records]

    def configure(self):
        self.state = EngineState.CONFIGURING
        self.matcher = Matcher(self.table, self.match_config)
        if self.check_barcodes:
            self.matcher.check_collisions()
        self.metrics = MetricsAccumulator(self.table)
        self.router = DemuxRouter(
            self.mode, self.table, self.headers(), barcode_tag=self.barcode_tag
        )

    def annotate(
        self,
        read: pysam.FastxRecord,
        result: MatchResult,
        *,
        is_paired: bool = False,
        is_read1: bool = True,
    ) -> OutputRecord:
        sequence, quality = read.sequence, read.quality
        if quality is None or len(quality) != len(sequence):
            raise RecordError(
                "Read bases and qualities differ in length", read.name, "reencode"
            )
        ordinal = result.ordinal
        name = MATE_SUFFIX.sub("", read.name) if is_paired else read.name
        rec = OutputRecord(
            f"{name}#{self.names[ordinal]}",
            sequence,
            None,
            self.read_groups[ordinal],
            is_paired=is_paired,
            is_read1=is_read1,
            is_qcfail=not result.passing_filter,
        )
        try:
            if result.matched:
                cut = self.barcode_length
                if len(sequence) < cut:
                    raise RecordError(
                        f"Read is shorter than the barcode length {cut}",
                        read.name,
                        "annotate",
                    )
                rec.sequence = sequence[cut:]
                rec.qualities = reencode(quality[cut:], self.quality_format)
                rec.barcode = sequence[:cut].upper()
                rec.barcode_quality = phred_to_fastq(
                    reencode(quality[:cut], self.quality_format)
                )
            else:
                rec.qualities = reencode(quality, self.quality_format)
        except RecordError as e:
            if e.read_name is None:
                raise type(e)(str(e), read.name, "reencode") from e
            raise
        return rec

    def check_mates(self, r1: pysam.FastxRecord, r2: pysam.FastxRecord):
        if MATE_SUFFIX.sub("", r1.name) != MATE_SUFFIX.sub("", r2.name):
            raise RecordError(
                f"The paired reads are not together: {r1.name} {r2.name}",
                r1.name,
                "extract",
            )
        bclen = self.barcode_length
        if r1.sequence[:bclen].upper() != r2.sequence[:bclen].upper():
            raise RecordError(
                "Index bases differ between mates: "
                f"{r1.sequence[:bclen]} {r2.sequence[:bclen]}",
                r1.name,
                "extract",
            )

    def decode_read(self, r1: pysam.FastxRecord, r2: pysam.FastxRecord = None):
        if r2 is not None and self.strict_pairs:
            self.check_mates(r1, r2)
        if len(r1.sequence) < self.barcode_length:
            raise RecordError(
                f"Index read is shorter than the barcode length {self.barcode_length}",
                r1.name,
                "extract",
            )
        result = self.matcher.classify(
            r1.sequence[: self.barcode_length], passes_filter(r1.comment)
        )
        if r2 is None:
            records = (self.annotate(r1, result),)
        else:
            records = (
                self.annotate(r1, result, is_paired=True, is_read1=True),
                self.annotate(r2, result, is_paired=True, is_read1=False),
            )
        self.router.dispatch(result.ordinal, records)
        self.metrics.update(result.ordinal, result)

    def run(self, fastq1: str, fastq2: str = None) -> MetricsSummary:
        """
        Decodes every read of a run.
        :param fastq1: FASTQ whose reads begin with the index bases
        :param fastq2: Optional FASTQ of mates, in the same order as fastq1
        :return: The finalized metrics
        """
        if self.state is not EngineState.IDLE:
            raise RuntimeError(f"Cannot start a run from state {self.state.name}")
        logger = logging.getLogger(PROGRAM_NAME)
        try:
            self.configure()
            with self.router:
                self.state = EngineState.STREAMING
                logger.info("Decoding records from %s", fastq1)
                i = 0
                for i, (r1, r2) in enumerate(iter_reads(fastq1, fastq2), 1):
                    self.decode_read(r1, r2)
                    if i % 1000000 == 0:
                        logger.info("Processed %d reads...", i)
                self.state = EngineState.FINALIZING
            logger.info("Decoding finished, processed %d reads", i)
            summary = self.metrics.finalize()
        except Exception:
            self.state = EngineState.FAILED
            logger.critical("Aborting", exc_info=True)
            if self.router is not None:
                self.router.close()
            raise
        self.state = EngineState.DONE
        return summary


class CLI(argparse.Namespace):
    fastq1: str
    fastq2: str = None
    output: str = None
    output_dir: str = None
    output_prefix: str = None
    output_format: str = None
    barcode_tag_name: str = "BC"
    barcode: list[str] = None
    barcode_file: str = None
    metrics_file: str
    max_mismatches: int = 1
    min_mismatch_delta: int = 1
    max_no_calls: int = 2
    read_group_id: str = "1"
    sample_alias: str = None
    library_name: str = "unknown"
    study_name: str = None
    platform_unit: str = None
    run_start_date: str = None
    sequencing_center: str = "SC"
    platform: str = "ILLUMINA"
    quality_format: QualityFormat
    strict_pairs: bool = False
    check: bool = False
    debug: bool = False

    _parser = argparse.ArgumentParser(description=PROGRAM_DESCRIPTION)
    _parser.add_argument(
        "fastq1", help="Path to the fastq file to decode, reads begin with the index"
    )
    _parser.add_argument(
        "--fastq2", help="Path to the fastq file of mates, in the same order as fastq1"
    )
    _parser.add_argument("-o", "--output", help="Write all decoded reads to this file")
    _parser.add_argument(
        "--output-dir",
        help="Write one bam or sam file per barcode to this directory",
    )
    _parser.add_argument(
        "--output-prefix", help="Filename prefix for per-barcode output files"
    )
    _parser.add_argument(
        "--output-format",
        choices=["bam", "sam"],
        help="Format of per-barcode output files (default: bam)",
    )
    _parser.add_argument(
        "--barcode-tag-name",
        default="BC",
        help="Tag used to store the barcode read in output records (default: %(default)s)",
    )
    _parser.add_argument(
        "--barcode",
        action="append",
        help="Barcode sequence, may be given more than once. Barcodes must be unique and all the same length.",
    )
    _parser.add_argument(
        "--barcode-file",
        help="Tab-delimited file of barcode sequences with a header row. Columns: barcode_sequence, "
        "and optionally barcode_name, library_name, sample_name and description.",
    )
    _parser.add_argument(
        "-M",
        "--metrics-file",
        required=True,
        help="Per-barcode metrics are written to this file",
    )
    _parser.add_argument(
        "--max-mismatches",
        type=int,
        default=1,
        help="Maximum mismatches for a barcode to be considered a match (default: %(default)d)",
    )
    _parser.add_argument(
        "--min-mismatch-delta",
        type=int,
        default=1,
        help="Minimum difference between the mismatches to the best and second best barcodes "
        "for a barcode to be considered a match (default: %(default)d)",
    )
    _parser.add_argument(
        "--max-no-calls",
        type=int,
        default=2,
        help="Maximum number of no-calls in a barcode read before it is considered unmatchable "
        "(default: %(default)d)",
    )
    _parser.add_argument(
        "--read-group-id",
        default="1",
        help="Read group ID, suffixed with #<barcode name> (default: %(default)s)",
    )
    _parser.add_argument(
        "--sample-alias", help="Sample name, using the library name if not given"
    )
    _parser.add_argument(
        "--library-name", default="unknown", help="Library name (default: %(default)s)"
    )
    _parser.add_argument("--study-name", help="Name of the study")
    _parser.add_argument("--platform-unit", help="Platform unit")
    _parser.add_argument("--run-start-date", help="Start date of the run (ISO 8601)")
    _parser.add_argument(
        "--sequencing-center",
        default="SC",
        help="Sequencing center name (default: %(default)s)",
    )
    _parser.add_argument(
        "--platform",
        default="ILLUMINA",
        help="Sequencing technology that produced the reads (default: %(default)s)",
    )
    _parser.add_argument(
        "-V",
        "--quality-format",
        type=QualityFormat.parse,
        required=True,
        help="Encoding of the fastq qualities: Standard (phred + 33), Illumina (phred + 64, "
        "pipeline 1.3 and above) or Solexa (solexa scaling + 64, before pipeline 1.3)",
    )
    _parser.add_argument(
        "--strict-pairs",
        action="store_true",
        default=False,
        help="Require mates to share a read name and index bases",
    )
    _parser.add_argument(
        "--check-bcs",
        dest="check",
        action="store_true",
        default=False,
        help="Warn about barcodes too similar for the --max-mismatches setting",
    )
    _parser.add_argument(
        "--debug", action="store_true", default=False, help="Increase logging verbosity"
    )

    def __init__(self, args=None):
        self.__class__._parser.parse_args(args, self)

    def barcode_table(self) -> BarcodeTable:
        if self.barcode and self.barcode_file:
            raise ConfigError("--barcode and --barcode-file are mutually exclusive")
        if self.barcode_file:
            return BarcodeTable.from_file(self.barcode_file)
        if self.barcode:
            return BarcodeTable.from_sequences(self.barcode)
        raise ConfigError("Either --barcode or --barcode-file is required")

    def check_files(self, mode: OutputMode):
        for fname in (self.fastq1, self.fastq2, self.barcode_file):
            if fname is not None and not os.access(fname, os.R_OK):
                raise ConfigError(f"Cannot read {fname}")
        outputs = [self.metrics_file]
        if isinstance(mode, Merged):
            outputs.append(mode.path)
        for fname in outputs:
            if not os.access(os.path.dirname(os.path.abspath(fname)), os.W_OK):
                raise ConfigError(f"Cannot write {fname}")

    def engine(self) -> DecodeEngine:
        mode = output_mode(
            self.output, self.output_dir, self.output_prefix, self.output_format
        )
        self.check_files(mode)
        return DecodeEngine(
            self.barcode_table(),
            mode,
            match_config=MatchConfig(
                self.max_mismatches, self.min_mismatch_delta, self.max_no_calls
            ),
            quality_format=self.quality_format,
            read_group=ReadGroupInfo(
                self.read_group_id,
                self.library_name,
                self.sample_alias,
                self.study_name,
                self.platform_unit,
                self.run_start_date,
                self.sequencing_center,
                self.platform,
            ),
            barcode_tag=self.barcode_tag_name,
            strict_pairs=self.strict_pairs,
            check_barcodes=self.check,
        )

    def main(self) -> int:
        logging.basicConfig(
            level=logging.DEBUG if self.debug else logging.INFO,
            format="[%(asctime)s] %(levelname)s:%(name)s:%(message)s",
        )
        logger = logging.getLogger(PROGRAM_NAME)
        try:
            engine = self.engine()
        except ConfigError as e:
            logger.error("%s", e)
            return 1
        try:
            summary = engine.run(self.fastq1, self.fastq2)
        except Exception:
            # logged by the engine
            return 1
        logger.info("Writing metrics to %s", self.metrics_file)
        try:
            summary.write(self.metrics_file)
        except OSError:
            logger.critical("Aborting", exc_info=True)
            return 1
        logger.info(
            "All finished, %d of %d reads matched a barcode (%.2f%%)",
            summary.total.perfect_matches
            + summary.total.one_mismatch_matches
            + summary.total.other_matches,
            summary.read_count,
            summary.total.pct_matches,
        )
        return 0


def main(args: typing.Sequence[str] = None):
    sys.exit(CLI(args).main())


if __name__ == "__main__":
    main()
