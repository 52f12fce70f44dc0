"""
Copyright © 2025 Merck & Co., Inc., Rahway, NJ, USA and its affiliates. All rights reserved.
This file is part of fastq-index-decoder.

This source code is licensed under the MIT License found in the
LICENSE file in the root directory of this source tree.
"""

import array
import contextlib
import dataclasses
import logging
import os
import typing
from collections.abc import Iterable, Sequence

import pysam

from barcodes import BarcodeTable
from libdecode import ConfigError

OUTPUT_FORMATS = ("bam", "sam")


@dataclasses.dataclass(frozen=True, slots=True)
class Merged:
    path: str


@dataclasses.dataclass(frozen=True, slots=True)
class SplitByBarcode:
    directory: str
    prefix: str
    fmt: str = "bam"

    def path_for(self, name: str) -> str:
        return os.path.join(self.directory, f"{self.prefix}#{name}.{self.fmt}")


OutputMode = Merged | SplitByBarcode


def output_mode(
    output: str = None,
    output_dir: str = None,
    output_prefix: str = None,
    output_format: str = None,
) -> OutputMode:
    """
    Validates the output options into exactly one output mode.

    :param output: Single output file. Mutually exclusive with the split options.
    :param output_dir: Directory for one file per barcode
    :param output_prefix: Filename prefix for the per-barcode files
    :param output_format: bam or sam, for the per-barcode files
    :raises ConfigError: if both or neither modes are requested, or the split options are incomplete
    """
    split_options = (output_dir, output_prefix, output_format)
    if output is not None and any(opt is not None for opt in split_options):
        raise ConfigError(
            "A single output file and per-barcode output options are mutually exclusive"
        )
    if output is not None:
        return Merged(os.fspath(output))
    if output_dir is None:
        raise ConfigError("Either an output file or an output directory is required")
    if not output_prefix:
        raise ConfigError("An output prefix is required when splitting output by barcode")
    fmt = (output_format or "bam").lower()
    if fmt not in OUTPUT_FORMATS:
        raise ConfigError(f"Output format must be one of {OUTPUT_FORMATS}, got {fmt}")
    return SplitByBarcode(os.fspath(output_dir), output_prefix, fmt)


@dataclasses.dataclass(slots=True)
class OutputRecord:
    name: str
    sequence: str
    qualities: array.array
    read_group: str
    barcode: str = ""
    barcode_quality: str = ""
    is_paired: bool = False
    is_read1: bool = True
    is_qcfail: bool = False


class SamWriter:
    __slots__ = ("outbam", "record", "num_written", "filename")

    def __init__(
        self,
        filename: str,
        header: typing.Union[dict, pysam.AlignmentHeader],
    ):
        mode = "w" if filename.endswith(".sam") else "wb"
        self.filename = filename
        self.outbam = pysam.AlignmentFile(filename, mode, header=header)
        self.record = pysam.AlignedSegment()
        self.num_written = 0

    def write(self, rec: OutputRecord, barcode_tag: str = "BC", quality_tag: str = "QT"):
        """
        Writes an unaligned OutputRecord.
        :param rec: The record to write
        :param barcode_tag: Tag holding the trimmed index bases, only set when rec.barcode is not empty
        :param quality_tag: Tag holding the phred+33 qualities of the index bases
        """
        record = self.record
        record.flag = 0
        record.is_unmapped = True
        if rec.is_paired:
            record.is_paired = True
            record.mate_is_unmapped = True
            record.is_read1 = rec.is_read1
            record.is_read2 = not rec.is_read1
        record.is_qcfail = rec.is_qcfail
        record.query_name = rec.name
        record.query_sequence = rec.sequence
        record.query_qualities = rec.qualities
        tags = [("RG", rec.read_group)]
        if rec.barcode:
            tags += [(barcode_tag, rec.barcode), (quality_tag, rec.barcode_quality)]
        record.set_tags(tags)
        self.outbam.write(record)
        self.num_written += 1

    def close(self):
        self.outbam.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.outbam.__exit__(exc_type, exc_val, exc_tb)


class DemuxRouter:
    """
    Owns every output file of a run and routes records to them by barcode ordinal.

    All destinations are opened when the router is built. The ordinal-indexed destination
    tuple has one slot per barcode plus slot 0 for unmatched reads; in merged mode every
    slot refers to the same writer.
    """

    def __init__(
        self,
        mode: OutputMode,
        table: BarcodeTable,
        headers: Sequence[dict],
        *,
        barcode_tag: str = "BC",
        quality_tag: str = "QT",
    ):
        """
        :param mode: Merged or SplitByBarcode
        :param table: The barcode table, used for ordinals and file names
        :param headers: SAM headers indexed by ordinal for split output, or a single header for merged output
        :param barcode_tag: Tag name for the trimmed index bases
        :param quality_tag: Tag name for the index base qualities
        """
        self.mode = mode
        self.barcode_tag = barcode_tag
        self.quality_tag = quality_tag
        self.exit_stack = contextlib.ExitStack()
        self._closed = False
        logger = logging.getLogger("DemuxRouter")
        try:
            if isinstance(mode, Merged):
                logger.info("Open output file %s", mode.path)
                writer = self.exit_stack.enter_context(SamWriter(mode.path, headers[0]))
                self.writers: tuple[SamWriter, ...] = (writer,)
                self._destinations = (writer,) * table.num_ordinals
            else:
                logger.info(
                    "Open %d per-barcode output files in %s",
                    table.num_ordinals,
                    mode.directory,
                )
                paths = [
                    mode.path_for(table.display_name(i))
                    for i in range(table.num_ordinals)
                ]
                if len(set(paths)) != len(paths):
                    raise ValueError("Barcode names do not map to distinct output files")
                os.makedirs(mode.directory, exist_ok=True)
                self.writers = tuple(
                    self.exit_stack.enter_context(SamWriter(path, header))
                    for path, header in zip(paths, headers, strict=True)
                )
                self._destinations = self.writers
        except BaseException:
            self.close()
            raise

    @property
    def filenames(self) -> list[str]:
        return [writer.filename for writer in self.writers]

    @property
    def written_counts(self) -> list[int]:
        return [writer.num_written for writer in self.writers]

    def dispatch(self, ordinal: int, records: Iterable[OutputRecord]):
        if self._closed:
            raise ValueError("Cannot dispatch to a closed router")
        writer = self._destinations[ordinal]
        for rec in records:
            writer.write(rec, self.barcode_tag, self.quality_tag)

    def close(self):
        if not self._closed:
            self._closed = True
            self.exit_stack.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if not self._closed:
            self._closed = True
            return self.exit_stack.__exit__(exc_type, exc_val, exc_tb)
