"""Matrix export — MatrixView → pandas DataFrame → .xlsx / plain text.

Rows follow the rendered matrix: the header block (premium, base sum,
payment method), then the main features, the add-on programs and the
leftover rows. Columns are the visible offer columns in display order.
Cells use the same check/minus classification as the UI.
"""

from __future__ import annotations

import logging
from pathlib import Path

import pandas as pd
from openpyxl.styles import Alignment, Font, PatternFill
from openpyxl.utils import get_column_letter

from .features import MISSING, FeatureValue, ValueKind
from .matrix import MatrixView
from .models import Column, payment_method_label

logger = logging.getLogger("offer_matrix.export")

PREMIUM_ROW = "Prēmija (EUR)"
BASE_SUM_ROW = "Apdrošinājuma summa (EUR)"
PAYMENT_ROW = "Pakalpojuma apmaksas veids"
ADDONS_HEADER = "Papildus programmas"
LEFTOVERS_HEADER = "Citi lauki"

SHEET_NAME = "Salīdzinājums"

_HEADER_FILL = PatternFill(start_color="D9E1F2", end_color="D9E1F2", fill_type="solid")
_SECTION_FILL = PatternFill(start_color="F2F2F2", end_color="F2F2F2", fill_type="solid")
_BOLD = Font(bold=True)


def _amount(value: float | None) -> str:
    if value is None:
        return MISSING.display()
    return FeatureValue(ValueKind.NUMBER, float(value)).display()


def _column_label(column: Column) -> str:
    label = column.label
    if column.program_code:
        label = f"{label} ({column.program_code})"
    return label


def _unique_labels(columns: list[Column]) -> list[str]:
    labels: list[str] = []
    seen: dict[str, int] = {}
    for column in columns:
        label = _column_label(column)
        seen[label] = seen.get(label, 0) + 1
        labels.append(label if seen[label] == 1 else f"{label} #{seen[label]}")
    return labels


def matrix_to_frame(view: MatrixView) -> pd.DataFrame:
    """Tabulate a view. Error columns show their message in every row."""
    index: list[str] = [PREMIUM_ROW, BASE_SUM_ROW, PAYMENT_ROW]
    index.extend(view.sections.main)
    if view.sections.addons:
        index.append(ADDONS_HEADER)
        index.extend(view.sections.addons)
    if view.sections.leftovers:
        index.append(LEFTOVERS_HEADER)
        index.extend(view.sections.leftovers)

    data: dict[str, list[str]] = {}
    for label, column in zip(_unique_labels(view.columns), view.columns):
        if column.is_error:
            data[label] = [column.error or ""] * len(index)
            continue
        cells = []
        for row in index:
            if row == PREMIUM_ROW:
                cells.append(_amount(column.premium_eur))
            elif row == BASE_SUM_ROW:
                cells.append(_amount(column.base_sum_eur))
            elif row == PAYMENT_ROW:
                cells.append(payment_method_label(column.payment_method))
            elif row in (ADDONS_HEADER, LEFTOVERS_HEADER):
                cells.append("")
            else:
                cells.append(view.cell(column, row).display())
        data[label] = cells

    return pd.DataFrame(data, index=pd.Index(index, name="Pozīcija"))


def export_xlsx(view: MatrixView, path: str | Path) -> Path:
    """Write the matrix to an .xlsx workbook and return its path."""
    path = Path(path)
    frame = matrix_to_frame(view)

    with pd.ExcelWriter(path, engine="openpyxl") as writer:
        frame.to_excel(writer, sheet_name=SHEET_NAME)
        ws = writer.sheets[SHEET_NAME]

        for cell in ws[1]:
            cell.font = _BOLD
            cell.fill = _HEADER_FILL
            cell.alignment = Alignment(wrap_text=True, vertical="top")

        for row in ws.iter_rows(min_row=2):
            if row[0].value in (ADDONS_HEADER, LEFTOVERS_HEADER):
                for cell in row:
                    cell.fill = _SECTION_FILL
                row[0].font = _BOLD
            for cell in row[1:]:
                cell.alignment = Alignment(horizontal="center")

        ws.column_dimensions["A"].width = 60
        for col in range(2, len(frame.columns) + 2):
            ws.column_dimensions[get_column_letter(col)].width = 22
        ws.freeze_panes = "B2"

    logger.info("Exported %d column(s) x %d row(s) to %s", len(frame.columns), len(frame), path)
    return path


def render_text(view: MatrixView) -> str:
    """Plain-text rendering for terminals."""
    frame = matrix_to_frame(view)
    if frame.columns.empty:
        return "(no offers)"
    return frame.to_string()
