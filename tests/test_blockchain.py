import json

import pytest
import requests

from blockchain import BlockchainClient, LocalBlockchain, RpcBlockchainClient, TransactionAuditTrail, WEI_PER_ETH

VOTER = "0x7E5F4552091A69125d5DfCb7b8C2659029395Bdf"


@pytest.fixture
def ledger_path(tmp_path):
    return str(tmp_path / "ledger.json")


@pytest.fixture
def ledger(ledger_path, authority_keys):
    public_key, private_key = authority_keys
    return LocalBlockchain(public_key, private_key, ledger_path, funding_pool=0.01)


class TestLocalBlockchain:
    def test_genesis_chain_is_valid(self, ledger):
        assert len(ledger.chain) == 1
        assert ledger.is_connected()

    def test_funding_moves_units_from_pool(self, ledger):
        tx_hash = ledger.fund_voter_address(VOTER, 0.004)
        assert tx_hash.startswith("0x") and len(tx_hash) == 66
        assert ledger.get_account_balance(VOTER.lower()) == pytest.approx(0.004)
        assert ledger.remaining_funding() == pytest.approx(0.006)
        assert ledger.fund_voter_address(VOTER, 0.01) == ""
        assert ledger.is_valid()

    def test_registration_is_recorded_once(self, ledger):
        assert not ledger.is_voter_registered(VOTER)
        assert ledger.register_voter_on_contract(VOTER)
        assert ledger.is_voter_registered(VOTER.lower())
        assert ledger.register_voter_on_contract(VOTER) == ""

    def test_chain_survives_reload(self, ledger, ledger_path, authority_keys):
        ledger.fund_voter_address(VOTER, 0.001)
        ledger.register_voter_on_contract(VOTER)
        reloaded = LocalBlockchain(*authority_keys, ledger_path, funding_pool=0.01)
        assert len(reloaded.chain) == 3
        assert reloaded.is_valid()
        assert reloaded.is_voter_registered(VOTER)

    def test_tampering_breaks_validity(self, ledger):
        ledger.fund_voter_address(VOTER, 0.001)
        ledger.chain[1].transactions[0]["amount"] = 0.5
        assert not ledger.is_valid()
        assert not ledger.is_connected()

    def test_foreign_signature_breaks_validity(self, ledger, ledger_path):
        ledger.fund_voter_address(VOTER, 0.001)
        with open(ledger_path) as f:
            data = json.load(f)
        data[1]["authority_signature"] = data[0]["authority_signature"]
        with open(ledger_path, "w") as f:
            json.dump(data, f)
        reloaded = LocalBlockchain(ledger.authority_public_key, ledger.authority_private_key, ledger_path)
        assert not reloaded.is_valid()

    def test_reset_chain(self, ledger):
        ledger.register_voter_on_contract(VOTER)
        ledger.reset_chain()
        assert len(ledger.chain) == 1
        assert not ledger.is_voter_registered(VOTER)

    def test_unreadable_file_starts_new_chain(self, ledger_path, authority_keys):
        with open(ledger_path, "w") as f:
            f.write("{not json")
        ledger = LocalBlockchain(*authority_keys, ledger_path)
        assert len(ledger.chain) == 1


def _rpc_handler(fake_response, balance_wei=10 ** 18, fail_send=False):
    def handler(url, body):
        method = body["method"]
        if method == "web3_clientVersion":
            return fake_response(200, {"jsonrpc": "2.0", "id": body["id"], "result": "Geth/v1"})
        if method == "eth_getBalance":
            return fake_response(200, {"jsonrpc": "2.0", "id": body["id"], "result": hex(balance_wei)})
        if method == "eth_sendTransaction":
            if fail_send:
                return fake_response(200, {"jsonrpc": "2.0", "id": body["id"], "error": {"message": "locked"}})
            return fake_response(200, {"jsonrpc": "2.0", "id": body["id"], "result": "0x" + "ab" * 32})
        return fake_response(404)
    return handler


class TestRpcBlockchainClient:
    FUNDER = "0x" + "11" * 20
    CONTRACT = "0x" + "22" * 20

    def test_connected_and_balance(self, fake_session, fake_response):
        session = fake_session(_rpc_handler(fake_response, balance_wei=2 * WEI_PER_ETH))
        client = RpcBlockchainClient("http://node", session=session)
        assert client.is_connected()
        assert client.get_account_balance(VOTER) == pytest.approx(2.0)

    def test_unreachable_node(self, fake_session):
        def handler(url, body):
            raise requests.ConnectionError("refused")

        client = RpcBlockchainClient("http://node", session=fake_session(handler))
        assert not client.is_connected()
        assert client.get_account_balance(VOTER) == 0.0

    def test_funding_sends_value(self, fake_session, fake_response):
        session = fake_session(_rpc_handler(fake_response))
        client = RpcBlockchainClient("http://node", funding_address=self.FUNDER, session=session)
        assert client.fund_voter_address(VOTER, 0.001) == "0x" + "ab" * 32
        tx = session.calls[-1]["json"]["params"][0]
        assert tx["from"] == self.FUNDER
        assert tx["to"] == VOTER
        assert int(tx["value"], 16) == 10 ** 15
        assert int(tx["gas"], 16) == 21000

    def test_funding_skipped_without_account_or_balance(self, fake_session, fake_response):
        session = fake_session(_rpc_handler(fake_response, balance_wei=0))
        assert RpcBlockchainClient("http://node", session=session).fund_voter_address(VOTER, 0.001) == ""
        funded = RpcBlockchainClient("http://node", funding_address=self.FUNDER, session=session)
        assert funded.fund_voter_address(VOTER, 0.001) == ""

    def test_node_error_returns_empty_hash(self, fake_session, fake_response):
        session = fake_session(_rpc_handler(fake_response, fail_send=True))
        client = RpcBlockchainClient("http://node", funding_address=self.FUNDER, session=session)
        assert client.fund_voter_address(VOTER, 0.001) == ""

    def test_contract_registration_call_data(self, fake_session, fake_response):
        session = fake_session(_rpc_handler(fake_response))
        client = RpcBlockchainClient("http://node", self.FUNDER, self.CONTRACT, session=session)
        assert client.register_voter_on_contract(VOTER)
        tx = session.calls[-1]["json"]["params"][0]
        assert tx["to"] == self.CONTRACT
        data = tx["data"]
        assert len(data) == 2 + 8 + 64
        assert data.endswith(VOTER[2:].lower())

    def test_no_contract_configured(self, fake_session, fake_response):
        session = fake_session(_rpc_handler(fake_response))
        assert RpcBlockchainClient("http://node", self.FUNDER, session=session).register_voter_on_contract(VOTER) == ""
        assert not session.calls


class FlakyChain(BlockchainClient):
    """Reports the node as down ``failures`` times before it comes up."""

    def __init__(self, failures, error=None):
        self.failures = failures
        self.error = error
        self.attempts = 0

    def is_connected(self):
        self.attempts += 1
        if self.attempts <= self.failures:
            if self.error:
                raise self.error
            return False
        return True


class TestConnectionRetry:
    def test_connects_after_failures(self):
        chain = FlakyChain(failures=2)
        assert chain.is_connected_with_retry(max_retries=3, backoff=0)
        assert chain.attempts == 3

    def test_recovers_from_exceptions(self):
        chain = FlakyChain(failures=1, error=ConnectionError("refused"))
        assert chain.is_connected_with_retry(max_retries=3, backoff=0)
        assert chain.attempts == 2

    def test_gives_up_after_max_retries(self):
        chain = FlakyChain(failures=10)
        assert not chain.is_connected_with_retry(max_retries=4, backoff=0)
        assert chain.attempts == 4

    def test_last_exception_is_raised(self):
        chain = FlakyChain(failures=10, error=ConnectionError("refused"))
        with pytest.raises(ConnectionError):
            chain.is_connected_with_retry(max_retries=2, backoff=0)
        assert chain.attempts == 2

    def test_backoff_grows_per_attempt(self, monkeypatch):
        delays = []
        monkeypatch.setattr("blockchain.time.sleep", delays.append)
        FlakyChain(failures=10).is_connected_with_retry(max_retries=3, backoff=0.5)
        assert delays == [0.5, 1.0]


class TestTransactionAuditTrail:
    def test_records_latest_hash_per_type(self):
        trail = TransactionAuditTrail()
        trail.record(VOTER, "funding", "0xaaa")
        trail.record(VOTER, "funding", "0xbbb")
        entry = trail.record(VOTER, "registration", "0xccc")

        assert trail.latest(VOTER, "funding") == "0xbbb"
        assert trail.latest(VOTER.lower(), "registration") == "0xccc"
        assert entry["timestamp"] > 0
        assert set(trail.entries(VOTER)) == {"funding", "registration"}
        assert trail.latest("0x" + "00" * 20, "funding") == ""
        assert trail.entries("0x" + "00" * 20) == {}

    def test_persists_to_file(self, tmp_path):
        path = str(tmp_path / "audit.json")
        TransactionAuditTrail(path).record(VOTER, "funding", "0xaaa")
        with open(path) as f:
            assert json.load(f)[VOTER.lower()]["funding"]["tx_hash"] == "0xaaa"
        assert TransactionAuditTrail(path).latest(VOTER, "funding") == "0xaaa"

    def test_unreadable_file_starts_empty(self, tmp_path):
        path = tmp_path / "audit.json"
        path.write_text("{not json")
        trail = TransactionAuditTrail(str(path))
        assert trail.records == {}
        trail.record(VOTER, "registration", "0xddd")
        assert TransactionAuditTrail(str(path)).latest(VOTER, "registration") == "0xddd"
