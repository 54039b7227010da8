from __future__ import annotations

import logging
from typing import Any, Dict, List

import pytest

from creatorsetup.discovery import Discovery, RpcAssetIndex
from creatorsetup.errors import NetworkError
from creatorsetup.ledger.types import AuthorityAccount
from creatorsetup.provisioning.session import Step
from creatorsetup.testing.flows import new_machine, run_setup, sequential_keys


class _BrokenIndex:
    def search_assets(self, authority: str, *, limit: int = 100) -> List[Dict[str, Any]]:
        raise NetworkError("das_unreachable", "searchAssets failed: connection refused")


def _auth(ledger, machine) -> AuthorityAccount:
    return ledger.read(machine.session.references.authority, AuthorityAccount.KIND)


def test_index_results_include_orphaned_collections(ledger, wallet, cfg) -> None:
    first = new_machine(ledger, wallet, cfg, key_factory=sequential_keys("first"))
    run_setup(first, until=Step.VERIFY)
    orphan = first.session.references.collection

    second = new_machine(ledger, wallet, cfg, key_factory=sequential_keys("second"))
    run_setup(second)
    auth = _auth(ledger, second)

    cols = Discovery(ledger, ledger).collections(auth)
    by_addr = {c.address: c for c in cols}
    assert set(by_addr) == {orphan, auth.core_collection}
    assert by_addr[auth.core_collection].is_active is True
    assert by_addr[orphan].is_active is False
    assert by_addr[orphan].name == "Acme Markets Collection"


def test_broken_index_still_reports_the_active_collection(machine, ledger, caplog: pytest.LogCaptureFixture) -> None:
    run_setup(machine)
    auth = _auth(ledger, machine)

    with caplog.at_level(logging.WARNING, logger="creatorsetup.discovery"):
        out = Discovery(ledger, _BrokenIndex()).discover(auth)

    assert out["collections"] == [{"address": auth.core_collection, "name": None, "is_active": True}]
    assert out["trees"][0]["address"] == auth.merkle_tree
    assert out["trees"][0]["num_minted"] == 0
    assert any("discovery_failed" in r.getMessage() for r in caplog.records)


def test_no_index_and_no_tree(machine, ledger) -> None:
    run_setup(machine, until=Step.CREATE_TREE)
    auth = _auth(ledger, machine)
    out = Discovery(ledger).discover(auth)
    assert out == {"collections": [], "trees": []}


class _FakePost:
    def __init__(self, reply: Any) -> None:
        self.reply = reply
        self.calls: List[Dict[str, Any]] = []

    def __call__(self, url: str, body: Dict[str, Any], timeout_s: float) -> Any:
        self.calls.append({"url": url, "body": body, "timeout_s": timeout_s})
        if isinstance(self.reply, Exception):
            raise self.reply
        return self.reply


def test_rpc_index_sends_search_assets() -> None:
    items = [{"id": "a", "grouping": [{"group_key": "collection", "group_value": "ColA"}]}]
    post = _FakePost({"jsonrpc": "2.0", "id": 1, "result": {"items": items}})
    idx = RpcAssetIndex("https://das.example/", timeout_s=3.0, post=post)

    assert idx.search_assets("Auth1", limit=10) == items
    sent = post.calls[0]
    assert sent["url"] == "https://das.example"
    assert sent["timeout_s"] == 3.0
    assert sent["body"]["method"] == "searchAssets"
    assert sent["body"]["params"] == {"owner": "Auth1", "grouping": ["collection"], "limit": 10}


def test_rpc_index_treats_no_assets_as_empty() -> None:
    post = _FakePost({"jsonrpc": "2.0", "id": 1, "error": {"code": -32000, "message": "No assets found"}})
    assert RpcAssetIndex("https://das.example", post=post).search_assets("Auth1") == []


def test_rpc_index_errors_are_network_errors() -> None:
    idx = RpcAssetIndex("https://das.example", post=_FakePost(NetworkError("rpc_unreachable", "refused")))
    with pytest.raises(NetworkError) as ei:
        idx.search_assets("Auth1")
    assert ei.value.code == "das_unreachable"

    idx = RpcAssetIndex("https://das.example", post=_FakePost({"error": {"message": "rate limited"}}))
    with pytest.raises(NetworkError) as ei:
        idx.search_assets("Auth1")
    assert ei.value.code == "das_error"
