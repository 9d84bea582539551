"""Onboarding flow that provisions the device identity.

Stages run in a fixed order::

    START -> KEYS_GENERATED -> KEYS_STORED -> BLOCKCHAIN_ATTEMPTED
          -> SERVER_REGISTERED -> DONE

A rejected server registration goes to ROLLBACK_KEYS -> FAILED and wipes the
key slot, so no local identity survives without a server record. The ledger
step is best effort: its outcome is recorded, never raised.
"""

import logging
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

import config
from blockchain import TransactionAuditTrail
from errors import FailureKind, SecurityError

logger = logging.getLogger(__name__)


class RegistrationStage(Enum):
    START = "start"
    KEYS_GENERATED = "keys_generated"
    KEYS_STORED = "keys_stored"
    BLOCKCHAIN_ATTEMPTED = "blockchain_attempted"
    SERVER_REGISTERED = "server_registered"
    DONE = "done"
    ROLLBACK_KEYS = "rollback_keys"
    FAILED = "failed"


@dataclass
class BlockchainIntegrationResult:
    connected: bool = False
    funded: bool = False
    registered: bool = False
    funding_tx_hash: str = ""
    registration_tx_hash: str = ""
    error: Optional[str] = None

    @property
    def is_success(self):
        return self.connected and self.funded


@dataclass
class RegistrationResult:
    success: bool
    stage: RegistrationStage
    voter_address: Optional[str] = None
    keys_created: bool = False
    blockchain: BlockchainIntegrationResult = field(default_factory=BlockchainIntegrationResult)
    server_response: dict = field(default_factory=dict)
    failure: Optional[FailureKind] = None
    error: Optional[str] = None
    stages: list = field(default_factory=list)


@dataclass(frozen=True)
class RegistrationSummary:
    voter_address: str
    public_key: str
    has_private_key: bool
    keys_valid: bool


class RegistrationOrchestrator:
    """Drives one registration attempt through the stages above.

    ``registration_api`` needs ``register_voter(voter_address, fields)``
    returning an object with a ``success`` flag; ``blockchain`` is any
    ``BlockchainClient`` or ``None`` to skip the ledger step.
    """

    def __init__(self, key_manager, registration_api, blockchain=None, blockchain_timeout=None,
                 funding_amount=None, audit_trail=None, connect_retries=3, retry_backoff=None):
        self.key_manager = key_manager
        self.registration_api = registration_api
        self.blockchain = blockchain
        self.blockchain_timeout = blockchain_timeout if blockchain_timeout is not None else config.BLOCKCHAIN_TIMEOUT
        self.funding_amount = funding_amount if funding_amount is not None else config.FUNDING_AMOUNT_ETH
        self.audit_trail = audit_trail if audit_trail is not None else TransactionAuditTrail()
        self.connect_retries = connect_retries
        self.retry_backoff = retry_backoff if retry_backoff is not None else config.BLOCKCHAIN_RETRY_BACKOFF

    def register(self, fields):
        """Provisions keys, tries the ledger, then registers with the server."""
        result = RegistrationResult(success=False, stage=RegistrationStage.START)
        self._advance(result, RegistrationStage.START)

        try:
            info, created = self.key_manager.ensure_key_pair()
        except SecurityError:
            logger.error("Security failure while provisioning keys")
            try:
                self._rollback(result)
            except SecurityError as cleanup_error:
                logger.error("Rollback after security failure also failed: %s", cleanup_error)
            raise
        except (OSError, ValueError) as e:
            return self._fail(result, FailureKind.KEY_UNAVAILABLE, f"key provisioning failed: {e}", rollback=True)
        if info is None:
            return self._fail(result, FailureKind.KEY_UNAVAILABLE, "key pair generation failed")

        result.voter_address = info.voter_address
        result.keys_created = created
        self._advance(result, RegistrationStage.KEYS_GENERATED)
        self._advance(result, RegistrationStage.KEYS_STORED)

        result.blockchain = self.try_blockchain_integration(info.voter_address)
        self._advance(result, RegistrationStage.BLOCKCHAIN_ATTEMPTED)

        server_fields = dict(fields)
        server_fields.setdefault("public_key", info.public_key_hex)
        try:
            response = self.registration_api.register_voter(info.voter_address, server_fields)
        except Exception as e:
            # Any collaborator fault here must still trigger the rollback.
            logger.error("Server registration raised: %s", e)
            return self._fail(result, FailureKind.COLLABORATOR_FAILURE, f"server registration error: {e}", rollback=True)
        if not getattr(response, "success", False):
            message = getattr(response, "message", "") or "server rejected registration"
            return self._fail(result, FailureKind.COLLABORATOR_FAILURE, message, rollback=True)

        result.server_response = dict(getattr(response, "data", {}) or {})
        self._advance(result, RegistrationStage.SERVER_REGISTERED)
        result.success = True
        self._advance(result, RegistrationStage.DONE)
        logger.info("Registration completed for %s", info.voter_address)
        return result

    def try_blockchain_integration(self, voter_address):
        """Connect, fund and register on the ledger; every call is timeboxed."""
        outcome = BlockchainIntegrationResult()
        if self.blockchain is None:
            outcome.error = "no blockchain client configured"
            return outcome

        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="blockchain")
        try:
            outcome.connected = bool(self._timeboxed(
                executor, self.blockchain.is_connected_with_retry, self.connect_retries, self.retry_backoff))
            if not outcome.connected:
                logger.warning("Blockchain not connected, skipping integration")
                return outcome

            outcome.funding_tx_hash = self._timeboxed(
                executor, self.blockchain.fund_voter_address, voter_address, self.funding_amount) or ""
            outcome.funded = bool(outcome.funding_tx_hash)
            if not outcome.funded:
                logger.warning("Funding returned no transaction for %s", voter_address)
                return outcome
            self.audit_trail.record(voter_address, "funding", outcome.funding_tx_hash)

            outcome.registration_tx_hash = self._timeboxed(
                executor, self.blockchain.register_voter_on_contract, voter_address) or ""
            outcome.registered = bool(outcome.registration_tx_hash)
            if outcome.registered:
                self.audit_trail.record(voter_address, "registration", outcome.registration_tx_hash)
        except FutureTimeout:
            outcome.error = f"blockchain call exceeded {self.blockchain_timeout}s"
            logger.warning("Blockchain integration timed out (non-critical)")
        except Exception as e:
            outcome.error = str(e) or type(e).__name__
            logger.warning("Blockchain integration failed (non-critical): %s", outcome.error)
        finally:
            # A timed-out call keeps running on its worker; do not block on it.
            executor.shutdown(wait=False)
        return outcome

    def retry_blockchain_integration(self):
        voter_address = self.key_manager.get_voter_address()
        if not voter_address:
            logger.warning("No voter address found, nothing to integrate")
            return None
        return self.try_blockchain_integration(voter_address)

    def registration_summary(self):
        if not self.key_manager.has_stored_key_pair():
            return None
        public_key = self.key_manager.get_public_key() or b""
        return RegistrationSummary(
            voter_address=self.key_manager.get_voter_address() or "",
            public_key=public_key.hex(),
            has_private_key=self.key_manager.can_sign_data(),
            keys_valid=self.key_manager.validate_stored_keys(),
        )

    def clear_identity(self):
        """Logout path: removes the local identity."""
        self.key_manager.clear_stored_keys()

    # Internals.

    def _timeboxed(self, executor, fn, *args):
        return executor.submit(fn, *args).result(timeout=self.blockchain_timeout)

    @staticmethod
    def _advance(result, stage):
        result.stage = stage
        result.stages.append(stage)
        logger.debug("Registration stage: %s", stage.value)

    def _rollback(self, result):
        self._advance(result, RegistrationStage.ROLLBACK_KEYS)
        self.key_manager.clear_stored_keys()
        logger.info("Generated keys rolled back")

    def _fail(self, result, failure, message, rollback=False):
        logger.error("Registration failed: %s", message)
        if rollback:
            self._rollback(result)
        result.success = False
        result.failure = failure
        result.error = message
        self._advance(result, RegistrationStage.FAILED)
        return result
