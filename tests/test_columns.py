"""Tests for the column model builder."""

from offer_matrix.columns import (
    DEFAULT_ERROR_MESSAGE,
    all_feature_keys,
    batch_errors,
    build_columns,
    editable,
)
from offer_matrix.errors import PartialBatchError
from offer_matrix.models import ColumnType, GroupStatus, OfferGroup, Program


def _group(source_file, *programs, **kwargs):
    return OfferGroup(source_file=source_file, programs=list(programs), **kwargs)


class TestBuildColumns:
    def test_program_columns(self):
        columns = build_columns(
            [
                _group(
                    "bta.pdf",
                    Program(row_id=7, insurer="BTA", program_code="Pamata", premium_eur=100.0),
                    Program(row_id=8, insurer="BTA", program_code="Plus"),
                )
            ]
        )
        assert [c.id for c in columns] == ["bta.pdf::BTA::Pamata", "bta.pdf::BTA::Plus"]
        assert columns[0].label == "BTA"
        assert columns[0].row_id == 7
        assert columns[0].premium_eur == 100.0
        assert columns[0].type == ColumnType.PROGRAM

    def test_row_id_falls_back_to_id(self):
        (column,) = build_columns([_group("a.pdf", Program(id=42, insurer="ERGO"))])
        assert column.row_id == 42

    def test_label_falls_back_to_source_file(self):
        (column,) = build_columns([_group("a.pdf", Program(program_code="X"))])
        assert column.label == "a.pdf"
        assert column.id == "a.pdf::::X"

    def test_duplicate_identities_get_suffix(self):
        columns = build_columns(
            [
                _group(
                    "a.pdf",
                    Program(insurer="BTA", program_code="P"),
                    Program(insurer="BTA", program_code="P"),
                    Program(insurer="BTA", program_code="P"),
                )
            ]
        )
        assert [c.id for c in columns] == ["a.pdf::BTA::P", "a.pdf::BTA::P::2", "a.pdf::BTA::P::3"]

    def test_failed_group_becomes_error_column(self):
        columns = build_columns(
            [
                _group("ok.pdf", Program(insurer="BTA")),
                _group("bad.pdf", status=GroupStatus.ERROR),
                _group("worse.pdf", error="OCR timeout"),
            ]
        )
        assert [c.id for c in columns] == ["ok.pdf::BTA::", "bad.pdf::error", "worse.pdf::error"]
        assert columns[1].is_error
        assert columns[1].error == DEFAULT_ERROR_MESSAGE
        assert columns[2].error == "OCR timeout"
        assert columns[1].features == {}

    def test_repeated_failure_of_one_file_keeps_both_errors(self):
        columns = build_columns(
            [
                _group("x.pdf", status=GroupStatus.ERROR),
                _group("x.pdf", error="Retry failed too"),
            ]
        )
        assert [c.id for c in columns] == ["x.pdf::error", "x.pdf::error::2"]
        assert [c.error for c in columns] == [DEFAULT_ERROR_MESSAGE, "Retry failed too"]
        assert batch_errors(columns) is not None

    def test_group_with_programs_and_error_is_not_failed(self):
        columns = build_columns([_group("a.pdf", Program(insurer="BTA"), error="partial")])
        assert len(columns) == 1
        assert not columns[0].is_error

    def test_empty_group_without_error_yields_nothing(self):
        assert build_columns([_group("pending.pdf")]) == []

    def test_features_are_copied(self):
        program = Program(insurer="BTA", features={"MR": "v"})
        (column,) = build_columns([_group("a.pdf", program)])
        column.features["MR"] = "-"
        assert program.features == {"MR": "v"}


class TestHelpers:
    def test_all_feature_keys(self):
        columns = build_columns(
            [
                _group("a.pdf", Program(insurer="BTA", features={"MR": "v", "Homeopāts": "-"})),
                _group("b.pdf", Program(insurer="ERGO", features={"CT": 1})),
            ]
        )
        assert all_feature_keys(columns) == ["CT", "Homeopāts", "MR"]

    def test_editable(self):
        ok, bad = build_columns([_group("a.pdf", Program(insurer="BTA")), _group("b.pdf", error="x")])
        assert editable(ok) is True
        assert editable(bad) is False

    def test_batch_errors(self):
        columns = build_columns(
            [_group("a.pdf", Program(insurer="BTA")), _group("b.pdf", error="Unreadable scan")]
        )
        err = batch_errors(columns)
        assert isinstance(err, PartialBatchError)
        assert err.failures == {"b.pdf": "Unreadable scan"}
        assert "b.pdf" in str(err)

    def test_batch_errors_none_when_all_parsed(self):
        assert batch_errors(build_columns([_group("a.pdf", Program(insurer="BTA"))])) is None
