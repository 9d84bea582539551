import logging

from api_client import VOTE_ERROR_MESSAGES, VoteErrorCode, VoteResult

logger = logging.getLogger(__name__)


class VotingService:
    """Signs a vote for the stored identity and hands it to the voting API."""

    def __init__(self, signer, voting_api):
        self.signer = signer
        self.voting_api = voting_api

    def cast_vote(self, election_pair_id, region, voter_id):
        signing = self.signer.sign_vote(election_pair_id, voter_id, region)
        if not signing.ok:
            # Nothing was sent; report which local stage failed.
            return VoteResult(
                success=False,
                code=VoteErrorCode.UNKNOWN,
                message=f"{VOTE_ERROR_MESSAGES[VoteErrorCode.UNKNOWN]} ({signing.detail})",
                failure=signing.failure,
            )
        logger.info("Submitting signed vote for election pair %s", election_pair_id)
        return self.voting_api.cast_vote(signing.envelope, election_pair_id, region, voter_id)
