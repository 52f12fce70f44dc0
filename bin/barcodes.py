"""
Copyright © 2025 Merck & Co., Inc., Rahway, NJ, USA and its affiliates. All rights reserved.
This file is part of fastq-index-decoder.

This source code is licensed under the MIT License found in the
LICENSE file in the root directory of this source tree.
"""

import dataclasses
import logging
import os
import typing
from collections.abc import Iterable, Iterator

import pandas as pd

from libdecode import ConfigError, wrap_exception

BARCODE_COLUMNS = (
    "barcode_sequence",
    "barcode_name",
    "library_name",
    "sample_name",
    "description",
)
VALID_BASES = frozenset("ACGT")
UNMATCHED_ORDINAL = 0


@dataclasses.dataclass(frozen=True, slots=True)
class CandidateBarcode:
    sequence: str
    name: str = ""
    library: str = ""
    sample: str = ""
    description: str = ""


class BarcodeTable:
    """
    Immutable, ordered set of candidate barcodes.

    Every candidate is assigned an ordinal one past its position in the table, so that
    ordinal 0 is left for reads that match no barcode. Downstream components index
    fixed-size sequences by this ordinal instead of looking up sequences.
    """

    __slots__ = ("_barcodes", "_ordinals", "_length")

    def __init__(self, barcodes: Iterable[CandidateBarcode]):
        barcodes = tuple(
            dataclasses.replace(bc, sequence=bc.sequence.upper()) for bc in barcodes
        )
        if not barcodes:
            raise ConfigError("No barcodes were supplied")
        lengths = {len(bc.sequence) for bc in barcodes}
        if len(lengths) != 1:
            raise ConfigError(
                f"Barcodes must all be the same length, found lengths {sorted(lengths)}"
            )
        (length,) = lengths
        if length == 0:
            raise ConfigError("Barcodes must not be empty")
        ordinals: dict[str, int] = {}
        names = {str(UNMATCHED_ORDINAL): UNMATCHED_ORDINAL}
        for i, bc in enumerate(barcodes, 1):
            if not VALID_BASES.issuperset(bc.sequence):
                raise ConfigError(f"Barcode {bc.sequence} contains bases other than ACGT")
            if bc.sequence in ordinals:
                raise ConfigError(f"Barcode {bc.sequence} is specified more than once")
            ordinals[bc.sequence] = i
            # names select output files and read groups, so they must be unique
            # including the ordinal fallbacks and the unmatched bucket
            name = bc.name or str(i)
            if name in names:
                other = names[name]
                raise ConfigError(
                    f"Barcode {bc.sequence} is named {name}, which is already used by "
                    + (f"barcode {other}" if other else "unmatched reads")
                )
            names[name] = i
        self._barcodes = barcodes
        self._ordinals = ordinals
        self._length = length

    @classmethod
    def from_sequences(cls, sequences: Iterable[str]) -> "BarcodeTable":
        return cls(CandidateBarcode(seq) for seq in sequences)

    @classmethod
    @wrap_exception(
        (KeyError, ValueError, pd.errors.ParserError, pd.errors.EmptyDataError),
        ConfigError,
    )
    def from_file(
        cls, fname: str | os.PathLike | typing.TextIO
    ) -> "BarcodeTable":
        """
        Reads a tab-delimited barcode file with a header row.

        :param fname: Path or handle. The `barcode_sequence` column is required; `barcode_name`,
            `library_name`, `sample_name` and `description` are optional. Other columns are ignored.
        :return: A validated BarcodeTable
        """
        df = pd.read_csv(fname, sep="\t", dtype=str, keep_default_na=False)
        df.columns = df.columns.str.strip().str.lower()
        if "barcode_sequence" not in df.columns:
            raise ConfigError("Barcode file is missing the barcode_sequence column")
        df = df.reindex(columns=list(BARCODE_COLUMNS), fill_value="")
        logging.getLogger("BarcodeTable").info("Read %d barcodes", len(df))
        return cls(
            CandidateBarcode(seq.strip(), name, library, sample, description)
            for seq, name, library, sample, description in df.itertuples(
                index=False, name=None
            )
        )

    @property
    def barcode_length(self) -> int:
        return self._length

    @property
    def barcodes(self) -> tuple[CandidateBarcode, ...]:
        return self._barcodes

    @property
    def sequences(self) -> tuple[str, ...]:
        return tuple(bc.sequence for bc in self._barcodes)

    def __len__(self):
        return len(self._barcodes)

    def __iter__(self) -> Iterator[CandidateBarcode]:
        return iter(self._barcodes)

    @property
    def num_ordinals(self) -> int:
        """Number of ordinals including the unmatched bucket."""
        return len(self._barcodes) + 1

    def ordinal(self, sequence: str) -> int:
        """Ordinal of a barcode sequence. The empty sequence maps to the unmatched bucket."""
        if not sequence:
            return UNMATCHED_ORDINAL
        try:
            return self._ordinals[sequence.upper()]
        except KeyError:
            raise KeyError(f"Unknown barcode {sequence}") from None

    def barcode(self, ordinal: int) -> CandidateBarcode | None:
        return None if ordinal == UNMATCHED_ORDINAL else self._barcodes[ordinal - 1]

    def display_name(self, ordinal: int) -> str:
        bc = self.barcode(ordinal)
        return bc.name if bc is not None and bc.name else str(ordinal)
