import logging
import os
import threading
from datetime import datetime

import pandas as pd

from api_client import ApiResult, VoteErrorCode, VoteResult
from transaction import parse_payload
from validator import TransactionValidator, parse_envelope

logger = logging.getLogger(__name__)

VOTER_COLUMNS = [
    'voter_address',
    'public_key',
    'voter_id',
    'full_name',
    'email',
    'region',
    'has_voted',
    'voted_pair',
    'registration_date',
]


# --- TABLE HELPERS ---

def initialize_voters_df():
    """Creates the initial, empty voter table."""
    return pd.DataFrame(columns=VOTER_COLUMNS)


def load_voters(db_path):
    """Loads the voter table from CSV, or an empty one if the file is missing."""
    if not os.path.exists(db_path):
        return initialize_voters_df()
    try:
        voters_df = pd.read_csv(db_path, dtype=str, keep_default_na=False)
    except (pd.errors.EmptyDataError, pd.errors.ParserError) as e:
        logger.warning("Voter table %s unreadable, starting empty: %s", db_path, e)
        return initialize_voters_df()
    for column in VOTER_COLUMNS:
        if column not in voters_df.columns:
            voters_df[column] = ""
    voters_df['has_voted'] = voters_df['has_voted'].astype(str).str.lower() == 'true'
    return voters_df[VOTER_COLUMNS]


def save_voters(voters_df, db_path):
    voters_df.to_csv(db_path, index=False)


def _address_mask(voters_df, voter_address):
    return voters_df['voter_address'].astype(str).str.lower() == str(voter_address).lower()


def update_voter_status(voters_df, voter_address, election_pair_id=""):
    """Marks a voter as having voted."""
    mask = _address_mask(voters_df, voter_address)
    if mask.any():
        voters_df.loc[mask, 'has_voted'] = True
        voters_df.loc[mask, 'voted_pair'] = election_pair_id
        return True
    return False


# --- REGISTRY BACKEND ---

class VoterRegistry:
    """Local registration and voting backend over a CSV voter table.

    Verifies incoming envelopes on its own, the way a server would, before
    recording a vote.
    """

    def __init__(self, db_path, validator=None):
        self.db_path = db_path
        self.validator = validator or TransactionValidator()
        self.voters_df = load_voters(db_path)
        self._lock = threading.Lock()

    def is_registered(self, voter_address):
        return bool(_address_mask(self.voters_df, voter_address).any())

    def get_voter(self, voter_address):
        rows = self.voters_df[_address_mask(self.voters_df, voter_address)]
        return None if rows.empty else rows.iloc[0].to_dict()

    def register_voter(self, voter_address, fields):
        if not voter_address:
            return ApiResult(False, 400, "voter address is required")
        with self._lock:
            if self.is_registered(voter_address):
                logger.warning("Voter %s already registered", voter_address)
                return ApiResult(False, 409, "voter address already registered")
            voter_id = str(fields.get('voter_id', fields.get('nik', '')))
            if voter_id and (self.voters_df['voter_id'].astype(str) == voter_id).any():
                return ApiResult(False, 409, "voter id already registered")
            new_voter = pd.DataFrame([{
                'voter_address': voter_address,
                'public_key': fields.get('public_key', ''),
                'voter_id': voter_id,
                'full_name': fields.get('full_name', ''),
                'email': fields.get('email', ''),
                'region': fields.get('region', ''),
                'has_voted': False,
                'voted_pair': '',
                'registration_date': datetime.now().strftime("%Y-%m-%d %H:%M:%S"),
            }], columns=VOTER_COLUMNS)
            if self.voters_df.empty:
                self.voters_df = new_voter
            else:
                self.voters_df = pd.concat([self.voters_df, new_voter], ignore_index=True)
            save_voters(self.voters_df, self.db_path)
        logger.info("Registered voter %s", voter_address)
        return ApiResult(True, 201, "registered", {"voter_address": voter_address})

    def cast_vote(self, signed_transaction, election_pair_id, region, voter_id):
        verdict = self.validator.verify_transaction_integrity(signed_transaction)
        if not verdict.fully_verified:
            return VoteResult.from_code(VoteErrorCode.INVALID_DATA, verdict.reason or "signature not verifiable")

        envelope = parse_envelope(signed_transaction)
        payload = parse_payload(envelope.payload) if envelope is not None else None
        if not payload:
            return VoteResult.from_code(VoteErrorCode.INVALID_DATA, "transaction data unreadable")
        submitted = {'election_pair_id': election_pair_id, 'region': region, 'voter_id': voter_id}
        for key, value in submitted.items():
            if str(payload.get(key)) != str(value):
                return VoteResult.from_code(VoteErrorCode.UNPROCESSABLE, f"{key} does not match the signed payload")

        voter_address = getattr(envelope, 'voter_address', '')
        with self._lock:
            voter = self.get_voter(voter_address) if voter_address else None
            if voter is None:
                return VoteResult.from_code(VoteErrorCode.FORBIDDEN, "voter address not registered")
            if voter['has_voted']:
                return VoteResult.from_code(VoteErrorCode.ALREADY_VOTED)
            update_voter_status(self.voters_df, voter_address, election_pair_id)
            save_voters(self.voters_df, self.db_path)
        logger.info("Vote recorded for %s", voter_address)
        return VoteResult.from_code(VoteErrorCode.OK, data={"voter_address": voter_address, "nonce": payload.get('nonce')})
