import hashlib
import json
import logging
import os
import threading
import time

import requests

from wallet import keccak256, sign_message, verify_signature

logger = logging.getLogger(__name__)

WEI_PER_ETH = 10 ** 18
STANDARD_GAS_LIMIT = 21000
REGISTER_VOTER_SIGNATURE = "registerVoter(address)"


# --- CLIENT INTERFACE ---

class BlockchainClient:
    """Optional ledger collaborator used during registration.

    Implementations report failure through return values (``False`` or an
    empty transaction hash) instead of raising.
    """

    def is_connected(self):
        raise NotImplementedError

    def is_connected_with_retry(self, max_retries=3, backoff=1.0):
        """Retries ``is_connected``, sleeping ``backoff * attempt`` seconds between tries.

        The last exception is re-raised when every attempt raised.
        """
        last_error = None
        for attempt in range(1, max_retries + 1):
            try:
                if self.is_connected():
                    logger.debug("Blockchain connection successful on attempt %d", attempt)
                    return True
                last_error = None
            except Exception as e:
                last_error = e
                logger.warning("Connection attempt %d failed: %s", attempt, e)
            if attempt < max_retries:
                time.sleep(backoff * attempt)
        logger.error("All %d connection attempts failed", max_retries)
        if last_error is not None:
            raise last_error
        return False

    def get_account_balance(self, address):
        raise NotImplementedError

    def fund_voter_address(self, voter_address, amount):
        raise NotImplementedError

    def register_voter_on_contract(self, voter_address):
        raise NotImplementedError


# --- BLOCK CLASS ---

class Block:
    """A block of ledger transactions sealed by the authority key."""

    def __init__(self, index, timestamp, previous_hash, transactions, authority_public_key,
                 authority_signature=None, authority_private_key=None):
        self.index = index
        self.timestamp = timestamp
        self.transactions = transactions
        self.previous_hash = previous_hash
        self.authority_public_key = authority_public_key
        self.authority_signature = authority_signature
        self.hash = self.calculate_hash()

        # Only the authority creating a new block passes its private key.
        if authority_private_key:
            self.authority_signature = self.sign_block(authority_private_key)

    def calculate_hash(self):
        block_string = json.dumps({
            'index': self.index,
            'timestamp': self.timestamp,
            'transactions': self.transactions,
            'previous_hash': self.previous_hash,
            'authority_public_key': self.authority_public_key,
        }, sort_keys=True).encode()
        return hashlib.sha256(block_string).hexdigest()

    def sign_block(self, authority_private_key):
        return sign_message(bytes.fromhex(authority_private_key), self.hash)

    def verify_signature(self):
        if not self.authority_signature:
            return False
        return verify_signature(self.hash, self.authority_signature, self.authority_public_key)

    def to_dict(self):
        return {
            'index': self.index,
            'timestamp': self.timestamp,
            'previous_hash': self.previous_hash,
            'transactions': self.transactions,
            'authority_signature': self.authority_signature,
            'authority_public_key': self.authority_public_key,
            'hash': self.hash,
        }

    @classmethod
    def from_dict(cls, data):
        block = cls(
            index=data['index'],
            timestamp=data['timestamp'],
            previous_hash=data['previous_hash'],
            transactions=data['transactions'],
            authority_public_key=data['authority_public_key'],
            authority_signature=data.get('authority_signature'),
        )
        block.hash = data['hash']
        return block


# --- LOCAL LEDGER ---

class LocalBlockchain(BlockchainClient):
    """Proof-of-authority ledger kept in a JSON file.

    Stands in for a node in development and tests: funding moves units out of
    a fixed pool owned by the authority, and voter registrations are recorded
    as contract transactions.
    """

    def __init__(self, authority_public_key, authority_private_key, filename, funding_pool=1.0):
        self.authority_public_key = authority_public_key
        self.authority_private_key = authority_private_key
        self.filename = filename
        self.funding_pool = funding_pool
        self.chain = []
        self.pending_transactions = []
        self._lock = threading.Lock()

        if os.path.exists(self.filename) and os.path.getsize(self.filename) > 0:
            self.load_chain()

        if not self.chain:
            self.create_genesis_block()

    @property
    def last_block(self):
        return self.chain[-1]

    def create_genesis_block(self):
        genesis = Block(
            index=0,
            timestamp=time.time(),
            previous_hash="0",
            transactions=[{"type": "GENESIS", "message": "VoteChain ledger initialized"}],
            authority_public_key=self.authority_public_key,
            authority_private_key=self.authority_private_key,
        )
        self.chain.append(genesis)
        self.save_chain()

    def new_transaction(self, tx_type, to_address, amount=0.0):
        """Queues a transaction and returns its hash."""
        tx = {
            'type': tx_type,
            'to': to_address,
            'amount': amount,
            'timestamp': time.time(),
        }
        tx['tx_hash'] = "0x" + keccak256(json.dumps(tx, sort_keys=True).encode()).hex()
        self.pending_transactions.append(tx)
        return tx['tx_hash']

    def new_block(self):
        """Seals pending transactions into a signed block."""
        block = Block(
            index=len(self.chain),
            timestamp=time.time(),
            previous_hash=self.last_block.hash,
            transactions=self.pending_transactions,
            authority_public_key=self.authority_public_key,
            authority_private_key=self.authority_private_key,
        )
        self.pending_transactions = []
        self.chain.append(block)
        self.save_chain()
        return block

    def transactions(self, tx_type=None):
        for block in self.chain[1:]:
            for tx in block.transactions:
                if tx_type is None or tx.get('type') == tx_type:
                    yield tx

    def is_valid(self):
        for i in range(1, len(self.chain)):
            current_block = self.chain[i]
            previous_block = self.chain[i - 1]

            if current_block.hash != current_block.calculate_hash():
                return False
            if current_block.previous_hash != previous_block.hash:
                return False
            if not current_block.verify_signature():
                return False
        return True

    def save_chain(self):
        chain_data = [block.to_dict() for block in self.chain]
        with open(self.filename, 'w') as f:
            json.dump(chain_data, f, indent=4)

    def load_chain(self):
        try:
            with open(self.filename, 'r') as f:
                data = json.load(f)
                self.chain = [Block.from_dict(d) for d in data]
        except (FileNotFoundError, json.JSONDecodeError, KeyError) as e:
            logger.warning("Ledger %s unreadable, starting a new chain: %s", self.filename, e)
            self.chain = []

    def reset_chain(self):
        with self._lock:
            if os.path.exists(self.filename):
                os.remove(self.filename)
            self.chain = []
            self.pending_transactions = []
            self.create_genesis_block()

    # Client interface.

    def is_connected(self):
        try:
            return self.is_valid()
        except Exception as e:
            logger.error("Ledger integrity check failed: %s", e)
            return False

    def get_account_balance(self, address):
        address = address.lower()
        return sum(tx.get('amount', 0.0) for tx in self.transactions("FUNDING") if tx.get('to', '').lower() == address)

    def remaining_funding(self):
        return self.funding_pool - sum(tx.get('amount', 0.0) for tx in self.transactions("FUNDING"))

    def fund_voter_address(self, voter_address, amount):
        with self._lock:
            if self.remaining_funding() < amount:
                logger.warning("Insufficient funding balance for %s (required %s)", voter_address, amount)
                return ""
            tx_hash = self.new_transaction("FUNDING", voter_address, amount)
            self.new_block()
        logger.info("Funded %s with %s: %s", voter_address, amount, tx_hash)
        return tx_hash

    def is_voter_registered(self, voter_address):
        address = voter_address.lower()
        return any(tx.get('to', '').lower() == address for tx in self.transactions("REGISTRATION"))

    def register_voter_on_contract(self, voter_address):
        with self._lock:
            if self.is_voter_registered(voter_address):
                logger.warning("Voter %s already registered on the ledger", voter_address)
                return ""
            tx_hash = self.new_transaction("REGISTRATION", voter_address)
            self.new_block()
        logger.info("Registered %s on the ledger: %s", voter_address, tx_hash)
        return tx_hash


# --- JSON-RPC NODE ---

class RpcBlockchainClient(BlockchainClient):
    """Talks to an Ethereum-compatible node over JSON-RPC.

    Funding uses ``eth_sendTransaction`` and therefore needs a funding account
    unlocked on the node (development chains).
    """

    def __init__(self, rpc_url, funding_address="", contract_address="", timeout=10.0, session=None):
        self.rpc_url = rpc_url
        self.funding_address = funding_address
        self.contract_address = contract_address
        self.timeout = timeout
        self.session = session or requests.Session()
        self._request_id = 0

    def _call(self, method, params=None):
        self._request_id += 1
        body = {"jsonrpc": "2.0", "method": method, "params": params or [], "id": self._request_id}
        resp = self.session.post(self.rpc_url, json=body, timeout=self.timeout)
        resp.raise_for_status()
        reply = resp.json()
        if reply.get("error"):
            raise RuntimeError(f"{method} failed: {reply['error'].get('message', reply['error'])}")
        return reply.get("result")

    def is_connected(self):
        try:
            version = self._call("web3_clientVersion")
            logger.debug("Node client version: %s", version)
            return True
        except (requests.RequestException, RuntimeError, ValueError) as e:
            logger.error("Error connecting to node at %s: %s", self.rpc_url, e)
            return False

    def get_account_balance(self, address):
        """Balance in ETH, 0.0 when the node cannot be reached."""
        try:
            return int(self._call("eth_getBalance", [address, "latest"]), 16) / WEI_PER_ETH
        except (requests.RequestException, RuntimeError, ValueError, TypeError) as e:
            logger.error("Error fetching balance for %s: %s", address, e)
            return 0.0

    def fund_voter_address(self, voter_address, amount):
        if not self.funding_address:
            logger.warning("No funding account configured, skipping funding")
            return ""
        if self.get_account_balance(self.funding_address) < amount:
            logger.warning("Insufficient funding balance (required %s ETH)", amount)
            return ""
        tx = {
            "from": self.funding_address,
            "to": voter_address,
            "value": hex(int(amount * WEI_PER_ETH)),
            "gas": hex(STANDARD_GAS_LIMIT),
        }
        try:
            tx_hash = self._call("eth_sendTransaction", [tx]) or ""
        except (requests.RequestException, RuntimeError, ValueError) as e:
            logger.error("Error funding voter address %s: %s", voter_address, e)
            return ""
        logger.info("Funding transaction sent: %s", tx_hash)
        return tx_hash

    def register_voter_on_contract(self, voter_address):
        if not self.contract_address or not self.funding_address:
            logger.warning("No voting contract configured")
            return ""
        selector = keccak256(REGISTER_VOTER_SIGNATURE.encode())[:4].hex()
        argument = voter_address.lower().replace("0x", "").rjust(64, "0")
        tx = {"from": self.funding_address, "to": self.contract_address, "data": "0x" + selector + argument}
        try:
            return self._call("eth_sendTransaction", [tx]) or ""
        except (requests.RequestException, RuntimeError, ValueError) as e:
            logger.error("Error registering voter on contract: %s", e)
            return ""


# --- AUDIT TRAIL ---

class TransactionAuditTrail:
    """Ledger transaction hashes recorded per voter address.

    Each address keeps the latest hash and timestamp per transaction type
    (``funding``, ``registration``). With a ``filename`` the trail is kept in
    a JSON file; otherwise it lives in memory.
    """

    def __init__(self, filename=None):
        self.filename = filename
        self.records = {}
        self._lock = threading.Lock()
        if filename and os.path.exists(filename) and os.path.getsize(filename) > 0:
            self.load()

    def record(self, voter_address, tx_type, tx_hash):
        """Stores ``tx_hash`` as the latest ``tx_type`` transaction of the voter."""
        entry = {'tx_hash': tx_hash, 'timestamp': int(time.time() * 1000)}
        with self._lock:
            self.records.setdefault(voter_address.lower(), {})[tx_type] = entry
            if self.filename:
                self.save()
        logger.debug("Blockchain transaction stored: %s - %s", tx_type, tx_hash)
        return entry

    def entries(self, voter_address):
        return dict(self.records.get(voter_address.lower(), {}))

    def latest(self, voter_address, tx_type):
        entry = self.records.get(voter_address.lower(), {}).get(tx_type)
        return entry['tx_hash'] if entry else ""

    def save(self):
        with open(self.filename, 'w') as f:
            json.dump(self.records, f, indent=4)

    def load(self):
        try:
            with open(self.filename, 'r') as f:
                self.records = json.load(f)
        except (FileNotFoundError, json.JSONDecodeError) as e:
            logger.warning("Audit trail %s unreadable, starting empty: %s", self.filename, e)
            self.records = {}
