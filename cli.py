import argparse
import json
import logging
import sys
from dataclasses import asdict

import config
from api_client import VoteChainApi
from blockchain import LocalBlockchain, RpcBlockchainClient, TransactionAuditTrail
from database import VoterRegistry
from errors import SecurityError
from key_store import EncryptedFileKeyStore
from registration import RegistrationOrchestrator
from signer import TransactionSigner
from validator import TransactionValidator, describe_transaction
from voting import VotingService
from wallet import KeyManager, generate_key_pair

logger = logging.getLogger(__name__)


def _key_manager(args):
    return KeyManager(EncryptedFileKeyStore(args.keystore, config.KEYSTORE_SECRET))


def _server(args):
    """Registration and voting backend: the REST API, or the CSV registry with ``--local``."""
    if args.local:
        return VoterRegistry(args.voters_db)
    return VoteChainApi()


def _blockchain(args):
    if not args.local:
        return RpcBlockchainClient(config.RPC_URL, config.FUNDING_ADDRESS, config.VOTING_CONTRACT_ADDRESS,
                                   config.BLOCKCHAIN_TIMEOUT)
    public_key = config.LEDGER_AUTHORITY_PUBLIC_KEY
    private_key = config.LEDGER_AUTHORITY_PRIVATE_KEY
    if not (public_key and private_key):
        authority = generate_key_pair()
        public_key, private_key = authority.public_key_hex, authority.private_key.hex()
        logger.warning("No ledger authority keys configured, sealing blocks with a one-off authority")
    return LocalBlockchain(public_key, private_key, args.ledger)


def cmd_keys(args):
    km = _key_manager(args)
    if args.action == "generate":
        info, created = km.ensure_key_pair()
        if info is None:
            print("Key generation failed.")
            return 1
        print(("Generated" if created else "Existing") + f" voter address: {info.voter_address}")
    elif args.action == "show":
        if not km.has_stored_key_pair():
            print("No key pair stored.")
            return 1
        print(f"Voter address: {km.get_voter_address()}")
        print(f"Public key:    {km.get_public_key().hex()}")
    elif args.action == "validate":
        ok = km.validate_stored_keys()
        print("Stored keys valid." if ok else "Stored keys invalid or missing.")
        return 0 if ok else 1
    elif args.action == "clear":
        km.clear_stored_keys()
        print("Key slot cleared.")
    return 0


def cmd_backup(args):
    km = _key_manager(args)
    if args.action == "export":
        token = km.export_keys_for_backup(args.yes, args.secret)
        if token is None:
            print("Nothing exported (consent with --yes and a stored key pair are required).", file=sys.stderr)
            return 1
        print(token)
        return 0
    if not args.backup:
        print("restore needs the backup token.", file=sys.stderr)
        return 1
    info = km.restore_keys_from_backup(args.backup, args.secret, replace=args.replace)
    if info is None:
        print("A key pair is already stored; pass --replace to overwrite it.", file=sys.stderr)
        return 1
    print(f"Restored voter address: {info.voter_address}")
    return 0


def cmd_sign(args):
    result = TransactionSigner(_key_manager(args)).sign_vote(args.pair, args.voter, args.region)
    if not result.ok:
        print(f"Signing failed ({result.failure.value}): {result.detail}", file=sys.stderr)
        return 1
    print(result.envelope)
    return 0


def cmd_register(args):
    orchestrator = RegistrationOrchestrator(
        _key_manager(args),
        _server(args),
        blockchain=_blockchain(args),
        audit_trail=TransactionAuditTrail(args.audit_log),
    )
    fields = {"voter_id": args.voter, "full_name": args.full_name, "email": args.email, "region": args.region}
    result = orchestrator.register(fields)
    print(json.dumps({
        "success": result.success,
        "stage": result.stage.value,
        "voter_address": result.voter_address,
        "keys_created": result.keys_created,
        "blockchain": asdict(result.blockchain),
        "error": result.error,
    }, indent=2))
    return 0 if result.success else 1


def cmd_vote(args):
    service = VotingService(TransactionSigner(_key_manager(args)), _server(args))
    result = service.cast_vote(args.pair, args.region, args.voter)
    print(json.dumps({
        "success": result.success,
        "code": result.code.name,
        "message": result.message,
        "failure": result.failure.value if result.failure else None,
    }, indent=2))
    return 0 if result.success else 1


def cmd_validate(args):
    ok = TransactionValidator().validate_signed_transaction(args.envelope)
    print(json.dumps({"valid": ok, **describe_transaction(args.envelope)}, indent=2, default=str))
    return 0 if ok else 1


def cmd_verify(args):
    result = TransactionValidator().verify_transaction_integrity(args.envelope, public_key=args.public_key)
    print(json.dumps({"valid": result.valid, "confidence": result.confidence.value, "reason": result.reason}))
    return 0 if result.valid else 1


def build_parser():
    parser = argparse.ArgumentParser(prog="votechain", description="Voter identity and vote signing tools")
    parser.add_argument("--keystore", default=config.KEYSTORE_PATH, help="path of the encrypted key slot")
    parser.add_argument("--ledger", default=config.LEDGER_PATH, help="local ledger file used with --local")
    parser.add_argument("--voters-db", default=config.VOTERS_DB_PATH, help="local voter table used with --local")
    parser.add_argument("--audit-log", default=config.AUDIT_LOG_PATH, help="ledger transaction audit file")
    parser.add_argument("--log-level", default=config.LOG_LEVEL)
    sub = parser.add_subparsers(dest="command", required=True)

    keys = sub.add_parser("keys", help="manage the device identity")
    keys.add_argument("action", choices=["generate", "show", "validate", "clear"])
    keys.set_defaults(func=cmd_keys)

    backup = sub.add_parser("backup", help="export or restore an encrypted key backup")
    backup.add_argument("action", choices=["export", "restore"])
    backup.add_argument("backup", nargs="?", help="backup token to restore")
    backup.add_argument("--secret", required=True, help="Fernet key protecting the backup")
    backup.add_argument("--yes", action="store_true", help="consent to exporting the private key")
    backup.add_argument("--replace", action="store_true", help="overwrite a stored key pair on restore")
    backup.set_defaults(func=cmd_backup)

    sign = sub.add_parser("sign", help="produce a signed vote transaction")
    sign.add_argument("--pair", required=True, help="election pair id")
    sign.add_argument("--voter", required=True, help="voter id")
    sign.add_argument("--region", required=True)
    sign.set_defaults(func=cmd_sign)

    register = sub.add_parser("register", help="provision keys and register the voter")
    register.add_argument("--voter", required=True, help="voter id")
    register.add_argument("--full-name", default="")
    register.add_argument("--email", default="")
    register.add_argument("--region", required=True)
    register.add_argument("--local", action="store_true", help="use the local ledger and voter table")
    register.set_defaults(func=cmd_register)

    vote = sub.add_parser("vote", help="sign and submit a vote")
    vote.add_argument("--pair", required=True, help="election pair id")
    vote.add_argument("--voter", required=True, help="voter id")
    vote.add_argument("--region", required=True)
    vote.add_argument("--local", action="store_true", help="submit to the local voter table")
    vote.set_defaults(func=cmd_vote)

    validate = sub.add_parser("validate", help="structural check of an envelope")
    validate.add_argument("envelope")
    validate.set_defaults(func=cmd_validate)

    verify = sub.add_parser("verify", help="structural and signature check of an envelope")
    verify.add_argument("envelope")
    verify.add_argument("--public-key", default=None, help="hex public key for legacy envelopes")
    verify.set_defaults(func=cmd_verify)
    return parser


def main(argv=None):
    args = build_parser().parse_args(argv)
    logging.basicConfig(level=args.log_level.upper(), format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    try:
        return args.func(args)
    except SecurityError as e:
        print(f"Security error: {e}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    sys.exit(main())
