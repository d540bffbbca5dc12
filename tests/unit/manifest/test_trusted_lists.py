from datetime import datetime, timezone

import pytest

from hub_common.exceptions import DecodeError, NetworkFailure, SignatureInvalid
from manifest_svc.trusted_lists import (
    HttpListSource,
    RpcListSource,
    from_ledger_time,
    parse_list_document,
    to_ledger_time,
)
from tests.fixtures.helpers import encode_blob, list_document, make_keys, make_manifest_b64

NOW = datetime(2026, 6, 1, tzinfo=timezone.utc)
NOW_LEDGER = to_ledger_time(NOW)


def _entry(keys, sequence=1):
    return (keys.master_public.hex().upper(), make_manifest_b64(keys, sequence))


def test_ledger_time_round_trip():
    assert from_ledger_time(0) == datetime(2000, 1, 1, tzinfo=timezone.utc)
    assert from_ledger_time(NOW_LEDGER) == NOW


def test_current_form_selects_highest_active_sequence():
    a, b = make_keys(), make_keys()
    document = list_document(
        [encode_blob([_entry(a)], sequence=1), encode_blob([_entry(a), _entry(b)], sequence=2)]
    )

    snapshot = parse_list_document(document, source="main", now=NOW)

    assert snapshot.source == "main"
    assert snapshot.sequence == 2
    assert len(snapshot.entries) == 2
    assert snapshot.signing_keys == sorted([a.signing_key, b.signing_key])
    assert snapshot.expiration == from_ledger_time(2_000_000_000)


def test_legacy_form():
    a = make_keys()
    document = list_document([encode_blob([_entry(a)], sequence=5)], legacy=True)

    snapshot = parse_list_document(document, source="legacy", now=NOW)

    assert snapshot.sequence == 5
    assert snapshot.signing_keys == [a.signing_key]


def test_expired_and_future_blobs_are_skipped():
    a = make_keys()
    document = list_document(
        [
            encode_blob([_entry(a)], sequence=1),
            encode_blob([_entry(a)], sequence=2, expiration=NOW_LEDGER - 1),
            encode_blob([_entry(a)], sequence=3, effective=NOW_LEDGER + 3600),
        ]
    )

    snapshot = parse_list_document(document, source="main", now=NOW)

    assert snapshot.sequence == 1


def test_no_active_blob_is_a_decode_error():
    document = list_document([encode_blob([_entry(make_keys())], expiration=NOW_LEDGER - 1)])

    with pytest.raises(DecodeError, match="No active blob"):
        parse_list_document(document, source="main", now=NOW)


@pytest.mark.parametrize(
    "document",
    [
        {},
        {"blobs_v2": []},
        {"blobs_v2": [{"blob": "!!not base64!!"}]},
        {"blob": "eyJub3QiOiAiYSBibG9iIn0="},
        {"blobs_v2": "nope"},
        [],
    ],
)
def test_malformed_documents(document):
    with pytest.raises(DecodeError):
        parse_list_document(document, source="main", now=NOW)


def test_undecodable_entry_manifest_is_excluded():
    a = make_keys()
    document = list_document([encode_blob([_entry(a), ("ED00", "bm90IGEgbWFuaWZlc3Q=")])])

    snapshot = parse_list_document(document, source="main", now=NOW)

    assert len(snapshot.entries) == 2
    assert snapshot.signing_keys == [a.signing_key]
    assert snapshot.rejected == 1


def test_publisher_signatures_verify():
    publisher, a = make_keys(), make_keys()
    document = list_document([encode_blob([_entry(a)])], publisher=publisher)

    snapshot = parse_list_document(
        document, source="main", publisher_key=publisher.master_public.hex(), now=NOW
    )

    assert snapshot.signing_keys == [a.signing_key]


def test_publisher_key_in_base58_form():
    publisher, a = make_keys(), make_keys()
    document = list_document([encode_blob([_entry(a)])], publisher=publisher)

    snapshot = parse_list_document(document, source="main", publisher_key=publisher.master_key, now=NOW)

    assert snapshot.sequence == 1


def test_tampered_blob_signature_rejects_blob():
    publisher, a = make_keys(), make_keys()
    good_blob = encode_blob([_entry(a)], sequence=1)
    forged_blob = encode_blob([_entry(a), _entry(make_keys())], sequence=2)
    document = list_document([good_blob, forged_blob], publisher=publisher)
    document["blobs_v2"][1]["signature"] = document["blobs_v2"][0]["signature"]

    snapshot = parse_list_document(document, source="main", publisher_key=publisher.master_key, now=NOW)

    assert snapshot.sequence == 1


def test_wrong_publisher_is_rejected():
    publisher, impostor = make_keys(), make_keys()
    document = list_document([encode_blob([_entry(make_keys())])], publisher=impostor)

    with pytest.raises(SignatureInvalid):
        parse_list_document(document, source="main", publisher_key=publisher.master_key, now=NOW)


def test_publisher_key_without_document_manifest():
    publisher = make_keys()
    document = list_document([encode_blob([_entry(make_keys())])])

    with pytest.raises(DecodeError, match="No active blob"):
        parse_list_document(document, source="main", publisher_key=publisher.master_key, now=NOW)


class _StubHttpClient:
    def __init__(self, document):
        self.document = document
        self.urls = []

    async def get_json(self, url, headers=None):
        self.urls.append(url)
        if isinstance(self.document, Exception):
            raise self.document
        return self.document


@pytest.mark.asyncio
async def test_http_source_adds_scheme():
    a = make_keys()
    client = _StubHttpClient(list_document([encode_blob([_entry(a)])]))
    source = HttpListSource("main", "lists.example.com/list.json", client)

    snapshot = await source.fetch(now=NOW)

    assert client.urls == ["https://lists.example.com/list.json"]
    assert snapshot.signing_keys == [a.signing_key]


@pytest.mark.asyncio
async def test_http_source_propagates_network_failure():
    source = HttpListSource("main", "https://lists.example.com", _StubHttpClient(NetworkFailure("down")))

    with pytest.raises(NetworkFailure):
        await source.fetch(now=NOW)


class _StubRpcClient:
    url = "https://node.example.com"

    def __init__(self, manifests):
        self.manifests = manifests

    async def fetch_trusted_validator_keys(self):
        return list(self.manifests)

    async def fetch_manifest(self, public_key):
        manifest = self.manifests[public_key]
        if isinstance(manifest, Exception):
            raise manifest
        return manifest


@pytest.mark.asyncio
async def test_rpc_source_skips_keys_without_manifest():
    a, b, c = make_keys(), make_keys(), make_keys()
    rpc = _StubRpcClient(
        {
            a.master_key: make_manifest_b64(a),
            b.master_key: None,
            c.master_key: NetworkFailure("timeout"),
        }
    )

    snapshot = await RpcListSource("rpc", rpc).fetch()

    assert [entry.validation_public_key for entry in snapshot.entries] == [a.master_key]
    assert snapshot.signing_keys == [a.signing_key]
    assert snapshot.rejected == 2
    assert snapshot.expiration is None
