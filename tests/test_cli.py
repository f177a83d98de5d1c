"""Tests for the offer_matrix command line."""

import json

import pytest
from offer_matrix.__main__ import main
from offer_matrix.prefs import decode


def _run(monkeypatch, *argv):
    monkeypatch.setattr("sys.argv", ["offer_matrix", *argv])
    main()


GROUPS = [
    {
        "source_file": "bta.pdf",
        "programs": [
            {"row_id": 1, "insurer": "BTA", "program_code": "Pamata", "features": {"MR": "v"}}
        ],
    },
    {"source_file": "broken.pdf", "status": "error", "error": "Unreadable scan"},
]


class TestPrefsCommand:
    def test_encode_then_decode(self, monkeypatch, capsys):
        _run(monkeypatch, "prefs", "encode", "--order", "b::x::y", "a::x::y", "--hidden", "Sports")
        token = capsys.readouterr().out.strip()
        assert decode(token).order == ["b::x::y", "a::x::y"]

        _run(monkeypatch, "prefs", "decode", token)
        snapshot = json.loads(capsys.readouterr().out)
        assert snapshot == {"column_order": ["b::x::y", "a::x::y"], "hidden_features": ["Sports"]}

    def test_decode_garbage_exits(self, monkeypatch, capsys):
        with pytest.raises(SystemExit) as exc:
            _run(monkeypatch, "prefs", "decode", "%%%")
        assert exc.value.code == 1
        assert "Error" in capsys.readouterr().err


class TestRenderExport:
    def test_render(self, monkeypatch, capsys, tmp_path):
        offers = tmp_path / "offers.json"
        offers.write_text(json.dumps(GROUPS), encoding="utf-8")
        _run(monkeypatch, "render", str(offers))
        out = capsys.readouterr().out
        assert "BTA (Pamata)" in out
        assert "broken.pdf: Unreadable scan" in out

    def test_export(self, monkeypatch, capsys, tmp_path):
        offers = tmp_path / "offers.json"
        offers.write_text(json.dumps(GROUPS), encoding="utf-8")
        target = tmp_path / "out.xlsx"
        _run(monkeypatch, "export", str(offers), str(target))
        assert target.exists()
        assert "Wrote 2 column(s)" in capsys.readouterr().out

    def test_missing_file(self, monkeypatch, tmp_path):
        with pytest.raises(SystemExit):
            _run(monkeypatch, "render", str(tmp_path / "nope.json"))

    def test_not_a_group_list(self, monkeypatch, tmp_path):
        offers = tmp_path / "offers.json"
        offers.write_text('{"not": "a list"}', encoding="utf-8")
        with pytest.raises(SystemExit):
            _run(monkeypatch, "render", str(offers))
