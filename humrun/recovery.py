"""Crash containment for background workers."""

from __future__ import annotations

import contextlib
import sys
import traceback
from collections.abc import Iterator


@contextlib.contextmanager
def recover(context: str) -> Iterator[None]:
    """Swallow an exception raised inside the block, logging it and its traceback to stderr.

    Usable both as ``with recover("label"):`` and as a decorator.
    """
    try:
        yield
    except Exception as exc:  # noqa: BLE001 - the whole point is to contain any failure
        sys.stderr.write(
            f"humrun: panic in {context}: {exc}\n{traceback.format_exc()}\n"
        )