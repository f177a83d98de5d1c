"""Column Model Builder — offer groups → flat list of matrix columns.

Pure function of its input: no network calls, no shared state. Columns are
rebuilt wholesale on every refresh, so callers must compare columns by
identity key (``Column.id``), never by object identity.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable

from .errors import PartialBatchError
from .models import Column, ColumnType, OfferGroup, identity_key

logger = logging.getLogger("offer_matrix.columns")

DEFAULT_ERROR_MESSAGE = "Processing failed"


def error_identity(source_file: str) -> str:
    return f"{source_file}::error"


def build_columns(offer_groups: Iterable[OfferGroup]) -> list[Column]:
    """Turn offer groups into typed columns with stable identity keys.

    A failed group (no programs plus an error status or message) becomes a
    single error column carrying only the message. If a document yields two
    programs with the same insurer and program code, or fails more than
    once, the later columns get a ``::2``, ``::3``... suffix so identities
    stay unique.
    """
    columns: list[Column] = []
    seen: dict[str, int] = {}

    def unique(key: str) -> str:
        seen[key] = seen.get(key, 0) + 1
        if seen[key] == 1:
            return key
        logger.debug("Duplicate column identity %s (#%d)", key, seen[key])
        return f"{key}::{seen[key]}"

    for group in offer_groups:
        if group.failed:
            columns.append(
                Column(
                    id=unique(error_identity(group.source_file)),
                    label=group.source_file,
                    source_file=group.source_file,
                    type=ColumnType.ERROR,
                    error=group.error or DEFAULT_ERROR_MESSAGE,
                )
            )
            continue

        for program in group.programs:
            key = identity_key(group.source_file, program.insurer, program.program_code)
            columns.append(
                Column(
                    id=unique(key),
                    label=program.insurer or group.source_file,
                    source_file=group.source_file,
                    type=ColumnType.PROGRAM,
                    row_id=program.backend_id,
                    insurer=program.insurer,
                    program_code=program.program_code,
                    premium_eur=program.premium_eur,
                    base_sum_eur=program.base_sum_eur,
                    payment_method=program.payment_method,
                    features=dict(program.features),
                )
            )

    return columns


def all_feature_keys(columns: Iterable[Column]) -> list[str]:
    """Sorted raw feature keys across program columns."""
    keys: set[str] = set()
    for column in columns:
        if not column.is_error:
            keys.update(column.features)
    return sorted(keys)


def editable(column: Column) -> bool:
    """Error columns get no edit/delete controls."""
    return not column.is_error


def batch_errors(columns: Iterable[Column]) -> PartialBatchError | None:
    """Summarize error columns, or None when every document parsed."""
    failures = {c.source_file: c.error or DEFAULT_ERROR_MESSAGE for c in columns if c.is_error}
    return PartialBatchError(failures) if failures else None
