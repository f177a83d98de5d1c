"""Tests for the preference codec and local preference stores."""

import base64
import json
import string

import pytest
from offer_matrix.errors import DecodeError
from offer_matrix.models import ViewPreferences
from offer_matrix.prefs import (
    SHARE_QUERY_PARAM,
    FilePreferenceStore,
    InMemoryPreferenceStore,
    create_preference_store,
    decode,
    decode_hidden,
    decode_strict,
    encode,
    encode_hidden,
    from_snapshot,
    share_query,
    storage_key,
    to_snapshot,
)

_URL_SAFE = set(string.ascii_letters + string.digits + "-_")

LATVIAN_PREFS = ViewPreferences(
    order=["ergo.pdf::ERGO::Optimāls", "bta.pdf::BTA::Pamata", "gjensidige.pdf::Gjensidige::Ģimene"],
    hidden=frozenset({"Homeopāts", "Sporta ārsts", "Zobārstniecība ar 50% atlaidi (pp)"}),
)


# ---------------------------------------------------------------------------
# Token codec
# ---------------------------------------------------------------------------


class TestTokenCodec:
    def test_round_trip_non_ascii(self):
        assert decode(encode(LATVIAN_PREFS)) == LATVIAN_PREFS

    def test_round_trip_empty(self):
        assert decode(encode(ViewPreferences())) == ViewPreferences()

    def test_token_is_url_safe(self):
        token = encode(LATVIAN_PREFS)
        assert set(token) <= _URL_SAFE

    def test_hidden_order_is_canonical(self):
        a = ViewPreferences(hidden=frozenset({"b", "a"}))
        b = ViewPreferences(hidden=frozenset({"a", "b"}))
        assert encode(a) == encode(b)

    @pytest.mark.parametrize("token", ["", "!!!", "bm90IGpzb24", None])
    def test_lenient_decode(self, token):
        assert decode(token) == ViewPreferences()

    def test_strict_decode_rejects_garbage(self):
        with pytest.raises(DecodeError):
            decode_strict("%%%not-base64%%%")

    def test_strict_decode_rejects_non_object(self):
        with pytest.raises(DecodeError):
            decode_strict(encode_hidden({"a"}))

    def test_strict_decode_rejects_wrong_types(self):
        raw = json.dumps({"v": 1, "o": "A", "h": []}).encode()
        token = base64.urlsafe_b64encode(raw).decode().rstrip("=")
        with pytest.raises(DecodeError):
            decode_strict(token)


class TestHiddenCodec:
    def test_round_trip(self):
        hidden = {"Homeopāts", "Sporta ārsts"}
        assert decode_hidden(encode_hidden(hidden)) == hidden

    def test_bad_token(self):
        assert decode_hidden("???") == frozenset()
        assert decode_hidden(None) == frozenset()

    def test_share_query(self):
        assert share_query(ViewPreferences()) == {}
        query = share_query(LATVIAN_PREFS)
        assert list(query) == [SHARE_QUERY_PARAM]
        assert decode_hidden(query[SHARE_QUERY_PARAM]) == LATVIAN_PREFS.hidden


# ---------------------------------------------------------------------------
# Snapshots
# ---------------------------------------------------------------------------


class TestSnapshots:
    def test_round_trip(self):
        snapshot = to_snapshot(LATVIAN_PREFS)
        assert snapshot["column_order"] == LATVIAN_PREFS.order
        assert snapshot["hidden_features"] == sorted(LATVIAN_PREFS.hidden)
        assert from_snapshot(snapshot) == LATVIAN_PREFS

    @pytest.mark.parametrize("data", [None, "x", {"column_order": "A"}, {"hidden_features": [1]}])
    def test_malformed(self, data):
        assert from_snapshot(data) == ViewPreferences()

    def test_storage_key(self):
        assert storage_key("Acme  Corp ") == "offer_matrix:view_prefs:acme-corp"
        assert storage_key("  ") == "offer_matrix:view_prefs:default"


# ---------------------------------------------------------------------------
# Stores
# ---------------------------------------------------------------------------


class TestInMemoryStore:
    def test_save_load_clear(self):
        store = InMemoryPreferenceStore()
        assert store.load("Acme").is_empty
        store.save("Acme", LATVIAN_PREFS)
        assert store.load("acme") == LATVIAN_PREFS
        assert store.load("Other").is_empty
        assert store.clear("Acme") is True
        assert store.clear("Acme") is False


class TestFileStore:
    def test_persists_across_instances(self, tmp_path):
        FilePreferenceStore(tmp_path).save("Acme", LATVIAN_PREFS)
        assert FilePreferenceStore(tmp_path).load("Acme") == LATVIAN_PREFS

    def test_keeps_other_contexts(self, tmp_path):
        store = FilePreferenceStore(tmp_path)
        store.save("A", ViewPreferences(order=["x"]))
        store.save("B", ViewPreferences(order=["y"]))
        assert store.clear("A") is True
        assert store.load("A").is_empty
        assert store.load("B").order == ["y"]

    def test_stored_as_readable_json(self, tmp_path):
        FilePreferenceStore(tmp_path).save("Acme", LATVIAN_PREFS)
        data = json.loads((tmp_path / FilePreferenceStore.FILENAME).read_text(encoding="utf-8"))
        assert "Homeopāts" in data["offer_matrix:view_prefs:acme"]["hidden_features"]

    def test_unreadable_file(self, tmp_path):
        (tmp_path / FilePreferenceStore.FILENAME).write_text("{not json", encoding="utf-8")
        assert FilePreferenceStore(tmp_path).load("Acme").is_empty

    def test_factory(self, tmp_path):
        assert isinstance(create_preference_store(), InMemoryPreferenceStore)
        assert isinstance(create_preference_store(str(tmp_path)), FilePreferenceStore)
