import os

from dotenv import load_dotenv

# --- ENVIRONMENT ---
# Values from a local .env file never override variables already set.
load_dotenv()


def _env_float(name, default):
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        return default


# --- SERVER / NODE ENDPOINTS ---
API_BASE_URL = os.environ.get("VOTECHAIN_API_URL", "http://localhost:8080")
RPC_URL = os.environ.get("VOTECHAIN_RPC_URL", "http://127.0.0.1:8545")

# Funding account must be unlocked on the node; both are optional.
FUNDING_ADDRESS = os.environ.get("VOTECHAIN_FUNDING_ADDRESS", "")
VOTING_CONTRACT_ADDRESS = os.environ.get("VOTECHAIN_CONTRACT_ADDRESS", "")
FUNDING_AMOUNT_ETH = _env_float("VOTECHAIN_FUNDING_AMOUNT", 0.001)

# Hex authority keys for the local development ledger.
LEDGER_AUTHORITY_PUBLIC_KEY = os.environ.get("VOTECHAIN_LEDGER_AUTHORITY_PUBLIC_KEY", "")
LEDGER_AUTHORITY_PRIVATE_KEY = os.environ.get("VOTECHAIN_LEDGER_AUTHORITY_PRIVATE_KEY", "")

# --- LOCAL STORAGE ---
KEYSTORE_PATH = os.path.expanduser(
    os.environ.get("VOTECHAIN_KEYSTORE_PATH", os.path.join("~", ".votechain", "keystore.bin"))
)
KEYSTORE_SECRET = os.environ.get("VOTECHAIN_KEYSTORE_SECRET") or None
LEDGER_PATH = os.environ.get("VOTECHAIN_LEDGER_PATH", "blockchain_data.json")
VOTERS_DB_PATH = os.environ.get("VOTECHAIN_VOTERS_DB", "voters.csv")
AUDIT_LOG_PATH = os.environ.get("VOTECHAIN_AUDIT_LOG_PATH", "blockchain_transactions.json")

# --- TIMEOUTS (seconds) ---
DEFAULT_TIMEOUT = _env_float("VOTECHAIN_HTTP_TIMEOUT", 10.0)
BLOCKCHAIN_TIMEOUT = _env_float("VOTECHAIN_BLOCKCHAIN_TIMEOUT", 15.0)
BLOCKCHAIN_RETRY_BACKOFF = _env_float("VOTECHAIN_BLOCKCHAIN_RETRY_BACKOFF", 1.0)

LOG_LEVEL = os.environ.get("VOTECHAIN_LOG_LEVEL", "INFO").upper()
