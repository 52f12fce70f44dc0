# Library of errors and helpers shared across the decoder modules

"""
Copyright © 2025 Merck & Co., Inc., Rahway, NJ, USA and its affiliates. All rights reserved.
This file is part of fastq-index-decoder.

This source code is licensed under the MIT License found in the
LICENSE file in the root directory of this source tree.
"""

import functools


class ConfigError(Exception):
    """Raised before any read is processed when the run cannot be configured."""


class RecordError(Exception):
    """Raised when a single input record cannot be decoded. Always fatal."""

    def __init__(self, message: str, read_name: str = None, stage: str = None):
        self.read_name = read_name
        self.stage = stage
        if read_name is not None or stage is not None:
            message = f"{message} (read={read_name}, stage={stage})"
        super().__init__(message)


class QualityEncodingError(RecordError):
    pass


NO_CALLS = frozenset("N.")


def is_no_call(base: str) -> bool:
    return base in NO_CALLS


def wrap_exception(
    catch_exc: type[BaseException] | tuple[type[BaseException]],
    wrap_exc: type[BaseException],
    *exc_args,
    **exc_kwargs,
):
    def wrapper(func):
        @functools.wraps(func)
        def inner(*args, **kwargs):
            try:
                return func(*args, **kwargs)
            except catch_exc as e:
                raise wrap_exc(*(exc_args or (str(e),)), **exc_kwargs) from e

        return inner

    return wrapper
