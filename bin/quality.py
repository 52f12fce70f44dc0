"""
Copyright © 2025 Merck & Co., Inc., Rahway, NJ, USA and its affiliates. All rights reserved.
This file is part of fastq-index-decoder.

This source code is licensed under the MIT License found in the
LICENSE file in the root directory of this source tree.

Conversion of FASTQ quality strings into phred scores.

Decoding is driven by immutable 256-entry translation tables built at import time, so
every function here is pure and safe to call from any thread. Rendering back to
phred+33 text goes through pysam.
"""

import array
import enum
import math

import pysam

from libdecode import QualityEncodingError

PHRED_OFFSET = 33
ILLUMINA_OFFSET = 64
SOLEXA_OFFSET = 64
MIN_SOLEXA = -5
MAX_SOLEXA = 62
MAX_PHRED = 126 - PHRED_OFFSET
_ILLEGAL = 0xFF


class QualityFormat(enum.Enum):
    STANDARD = "Standard"
    ILLUMINA = "Illumina"
    SOLEXA = "Solexa"

    @classmethod
    def parse(cls, value: "str | QualityFormat") -> "QualityFormat":
        if isinstance(value, cls):
            return value
        for fmt in cls:
            if value.lower() in (fmt.value.lower(), fmt.name.lower()):
                return fmt
        raise ValueError(f"Unknown quality format: {value}")


def solexa_to_phred(score: int) -> int:
    return round(10 * math.log10(1 + 10 ** (score / 10)))


def phred_to_solexa(score: int) -> int:
    if score <= 0:
        return MIN_SOLEXA
    solexa = 10 * math.log10(10 ** (score / 10) - 1)
    return max(MIN_SOLEXA, min(MAX_SOLEXA, round(solexa)))


def _make_table(lo: int, hi: int, convert) -> bytes:
    return bytes(convert(c) if lo <= c <= hi else _ILLEGAL for c in range(256))


_DECODE_TABLES: dict[QualityFormat, bytes] = {
    QualityFormat.STANDARD: _make_table(PHRED_OFFSET, 126, lambda c: c - PHRED_OFFSET),
    QualityFormat.ILLUMINA: _make_table(
        ILLUMINA_OFFSET, 126, lambda c: c - ILLUMINA_OFFSET
    ),
    QualityFormat.SOLEXA: _make_table(
        SOLEXA_OFFSET + MIN_SOLEXA,
        SOLEXA_OFFSET + MAX_SOLEXA,
        lambda c: solexa_to_phred(c - SOLEXA_OFFSET),
    ),
}


def reencode(quality: str | bytes, fmt: QualityFormat) -> array.array:
    """
    Converts a FASTQ quality string in the given encoding to phred scores.

    :param quality: Quality characters as read from the FASTQ file
    :param fmt: Encoding of the quality characters
    :return: array('B') of phred scores, one per character
    :raises QualityEncodingError: if any character is outside the legal range of the encoding
    """
    if isinstance(quality, str):
        try:
            quality = quality.encode("ascii")
        except UnicodeEncodeError:
            raise QualityEncodingError(
                f"Non-ASCII character in {fmt.value} quality string"
            ) from None
    quals = quality.translate(_DECODE_TABLES[fmt])
    if (i := quals.find(_ILLEGAL)) != -1:
        raise QualityEncodingError(
            f"Quality character {chr(quality[i])!r} at position {i} is not legal for {fmt.value} encoding"
        )
    return array.array("B", quals)


def encode(quals, fmt: QualityFormat) -> str:
    """Inverse of reencode. Lossy for Solexa, where scores are rounded on the way back."""
    if fmt is QualityFormat.SOLEXA:
        return "".join(chr(phred_to_solexa(q) + SOLEXA_OFFSET) for q in quals)
    offset = PHRED_OFFSET if fmt is QualityFormat.STANDARD else ILLUMINA_OFFSET
    out = []
    for q in quals:
        if not 0 <= q + offset <= 126:
            raise QualityEncodingError(f"Phred score {q} cannot be encoded as {fmt.value}")
        out.append(chr(q + offset))
    return "".join(out)


def phred_to_fastq(quals) -> str:
    """Renders phred scores as phred+33 text, e.g. for the QT tag."""
    if not isinstance(quals, array.array):
        quals = array.array("B", quals)
    # pysam does not range check, scores above MAX_PHRED would not be printable
    if quals and (top := max(quals)) > MAX_PHRED:
        raise QualityEncodingError(f"Phred score {top} is out of range")
    return pysam.array_to_qualitystring(quals, offset=PHRED_OFFSET)
