import pytest
from web3.exceptions import Web3Exception

from agent_x402.ledger import LedgerQueryError, RewardLedger

from conftest import CONTRACT, USER


@pytest.fixture
def ledger(chain):
    return RewardLedger(chain, CONTRACT)


def test_referrer_count(chain, ledger):
    chain.view_results["getReferrerCount"] = 4
    assert ledger.referrer_count("alice") == 4
    assert chain.view_calls == [("getReferrerCount", ("alice",))]


def test_referrer_stats(chain, ledger):
    chain.view_results["getReferrerStats"] = (["alice", "bob"], [3, 1])
    assert ledger.referrer_stats() == [
        {"referrer": "alice", "count": "3"},
        {"referrer": "bob", "count": "1"},
    ]


def test_referrer_stats_mismatch(chain, ledger):
    chain.view_results["getReferrerStats"] = (["alice"], [3, 1])
    with pytest.raises(LedgerQueryError):
        ledger.referrer_stats()


def test_tokens_by_referrer(chain, ledger):
    chain.view_results["getTokensByReferrer"] = [1, 7]
    assert ledger.tokens_by_referrer("alice") == ["1", "7"]


def test_rarity_stats(chain, ledger):
    chain.view_results["getRarityStatsByOwner"] = (5, 2, 1, 8)
    assert ledger.rarity_stats(USER) == {"common": "5", "rare": "2", "superRare": "1", "total": "8"}
    with pytest.raises(ValueError):
        ledger.rarity_stats("bob")


def test_rpc_errors_become_query_errors(chain, ledger):
    chain.view_error = Web3Exception("execution reverted")
    with pytest.raises(LedgerQueryError, match="getReferrerCount"):
        ledger.referrer_count("alice")


def test_invalid_contract_address(chain):
    with pytest.raises(ValueError):
        RewardLedger(chain, "0x1234")
