"""Tests for DataFrame / xlsx / text export."""

import pandas as pd
from offer_matrix.export import (
    ADDONS_HEADER,
    BASE_SUM_ROW,
    PAYMENT_ROW,
    PREMIUM_ROW,
    SHEET_NAME,
    export_xlsx,
    matrix_to_frame,
    render_text,
)
from offer_matrix.features import HIGH_TECH_EXAMS
from offer_matrix.matrix import OfferMatrix
from offer_matrix.models import OfferGroup, Program
from openpyxl import load_workbook


def _matrix():
    return OfferMatrix.from_groups(
        [
            OfferGroup(
                source_file="bta.pdf",
                programs=[
                    Program(
                        insurer="BTA",
                        program_code="Pamata",
                        premium_eur=310.0,
                        base_sum_eur=1500.5,
                        payment_method="monthly",
                        features={"MR": "v", "Sports": "-"},
                    ),
                    Program(insurer="BTA", program_code="Pamata", premium_eur=320.0),
                ],
            ),
            OfferGroup(
                source_file="ergo.pdf",
                programs=[
                    Program(
                        insurer="ERGO",
                        features={"Augsto tehnoloģiju izmeklējumi": "yes", "Homeopāts": 60},
                    )
                ],
            ),
            OfferGroup(source_file="broken.pdf", error="Unreadable scan"),
        ]
    )


class TestFrame:
    def test_rows_and_columns(self):
        frame = matrix_to_frame(_matrix().view())
        assert list(frame.index[:3]) == [PREMIUM_ROW, BASE_SUM_ROW, PAYMENT_ROW]
        assert frame.index.name == "Pozīcija"
        assert list(frame.columns) == ["BTA (Pamata)", "BTA (Pamata) #2", "ERGO", "broken.pdf"]
        assert ADDONS_HEADER in frame.index
        assert list(frame.index).index("Sports") > list(frame.index).index(ADDONS_HEADER)

    def test_cells(self):
        frame = matrix_to_frame(_matrix().view())
        assert frame.loc[PREMIUM_ROW, "BTA (Pamata)"] == "310"
        assert frame.loc[BASE_SUM_ROW, "BTA (Pamata)"] == "1500.5"
        assert frame.loc[BASE_SUM_ROW, "ERGO"] == "—"
        assert frame.loc[PAYMENT_ROW, "BTA (Pamata)"] == "Cenrāža programma"
        assert frame.loc[HIGH_TECH_EXAMS, "BTA (Pamata)"] == "✓"
        assert frame.loc[HIGH_TECH_EXAMS, "ERGO"] == "✓"
        assert frame.loc["Homeopāts", "ERGO"] == "60"
        assert frame.loc[ADDONS_HEADER, "ERGO"] == ""

    def test_error_column_shows_message(self):
        frame = matrix_to_frame(_matrix().view())
        assert set(frame["broken.pdf"]) == {"Unreadable scan"}

    def test_hidden_rows_excluded(self):
        matrix = _matrix()
        matrix.toggle_hidden("Homeopāts")
        assert "Homeopāts" not in matrix_to_frame(matrix.view()).index

    def test_follows_display_order(self):
        matrix = _matrix()
        matrix.move("ergo.pdf::ERGO::", "bta.pdf::BTA::Pamata")
        assert matrix_to_frame(matrix.view()).columns[0] == "ERGO"


class TestXlsx:
    def test_round_trip(self, tmp_path):
        out = export_xlsx(_matrix().view(), tmp_path / "matrix.xlsx")
        assert out.exists()
        back = pd.read_excel(out, sheet_name=SHEET_NAME, index_col=0, dtype=str)
        assert list(back.columns) == ["BTA (Pamata)", "BTA (Pamata) #2", "ERGO", "broken.pdf"]
        assert back.loc[HIGH_TECH_EXAMS, "ERGO"] == "✓"
        assert back.loc[PAYMENT_ROW, "BTA (Pamata)"] == "Cenrāža programma"

    def test_header_styling(self, tmp_path):
        out = export_xlsx(_matrix().view(), tmp_path / "matrix.xlsx")
        ws = load_workbook(out)[SHEET_NAME]
        assert ws["B1"].font.bold is True
        assert ws.freeze_panes == "B2"


class TestText:
    def test_render(self):
        text = render_text(_matrix().view())
        assert "BTA (Pamata)" in text
        assert PREMIUM_ROW in text

    def test_empty(self):
        assert render_text(OfferMatrix().view()) == "(no offers)"
