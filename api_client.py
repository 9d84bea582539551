import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

import requests

import config
from errors import FailureKind

logger = logging.getLogger(__name__)


class VoteErrorCode(Enum):
    OK = 0
    INVALID_DATA = 400
    UNAUTHENTICATED = 401
    FORBIDDEN = 403
    ALREADY_VOTED = 409
    UNPROCESSABLE = 422
    SERVER_ERROR = 500
    NETWORK_ERROR = -1
    UNKNOWN = -2

    @classmethod
    def from_status(cls, status_code):
        if 200 <= status_code < 300:
            return cls.OK
        for code in cls:
            if code.value == status_code:
                return code
        return cls.UNKNOWN


VOTE_ERROR_MESSAGES = {
    VoteErrorCode.OK: "Success",
    VoteErrorCode.INVALID_DATA: "Invalid vote data.",
    VoteErrorCode.UNAUTHENTICATED: "Authentication required. Please log in again.",
    VoteErrorCode.FORBIDDEN: "You are not authorized to vote in this election.",
    VoteErrorCode.ALREADY_VOTED: "You have already voted in this election.",
    VoteErrorCode.UNPROCESSABLE: "Invalid election or voter data.",
    VoteErrorCode.SERVER_ERROR: "Server error. Please try again later.",
    VoteErrorCode.NETWORK_ERROR: "Unable to reach the voting server.",
    VoteErrorCode.UNKNOWN: "Unknown error occurred.",
}


@dataclass(frozen=True)
class ApiResult:
    success: bool
    status_code: Optional[int] = None
    message: str = ""
    data: dict = field(default_factory=dict)


@dataclass(frozen=True)
class VoteResult:
    success: bool
    code: VoteErrorCode = VoteErrorCode.UNKNOWN
    message: str = ""
    failure: Optional[FailureKind] = None
    data: dict = field(default_factory=dict)

    @classmethod
    def from_code(cls, code, detail="", data=None):
        message = VOTE_ERROR_MESSAGES[code]
        if detail and code is not VoteErrorCode.OK:
            message = f"{message} ({detail})"
        failure = None if code is VoteErrorCode.OK else FailureKind.COLLABORATOR_FAILURE
        return cls(success=code is VoteErrorCode.OK, code=code, message=message, failure=failure, data=data or {})


def _error_detail(resp):
    try:
        body = resp.json()
    except ValueError:
        return resp.text[:200]
    if isinstance(body, dict):
        error = body.get("error")
        if isinstance(error, dict):
            return error.get("error_message") or error.get("message") or ""
        return body.get("message") or (error if isinstance(error, str) else "")
    return ""


class VoteChainApi:
    """REST client for the registration and voting endpoints."""

    def __init__(self, base_url=None, token=None, timeout=None, session=None):
        self.base_url = (base_url or config.API_BASE_URL).rstrip("/")
        self.token = token
        self.timeout = timeout if timeout is not None else config.DEFAULT_TIMEOUT
        self.session = session or requests.Session()

    def _headers(self):
        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    def _post(self, path, payload):
        return self.session.post(f"{self.base_url}{path}", json=payload, headers=self._headers(), timeout=self.timeout)

    def register_voter(self, voter_address, fields):
        payload = dict(fields)
        payload["voter_address"] = voter_address
        try:
            resp = self._post("/v1/user/register", payload)
        except requests.RequestException as e:
            logger.error("Registration request failed: %s", e)
            return ApiResult(False, None, f"network error: {e}")
        if 200 <= resp.status_code < 300:
            try:
                data = resp.json()
            except ValueError:
                data = {}
            logger.info("Server registration accepted for %s", voter_address)
            return ApiResult(True, resp.status_code, "registered", data if isinstance(data, dict) else {})
        detail = _error_detail(resp)
        logger.error("Server registration rejected (HTTP %s): %s", resp.status_code, detail)
        return ApiResult(False, resp.status_code, detail or f"HTTP {resp.status_code}")

    def cast_vote(self, signed_transaction, election_pair_id, region, voter_id):
        payload = {
            "election_pair_id": election_pair_id,
            "region": region,
            "voter_id": voter_id,
            "signed_transaction": signed_transaction,
        }
        try:
            resp = self._post("/v1/vote/cast", payload)
        except requests.RequestException as e:
            logger.error("Vote request failed: %s", e)
            return VoteResult.from_code(VoteErrorCode.NETWORK_ERROR, str(e))

        code = VoteErrorCode.from_status(resp.status_code)
        if code is VoteErrorCode.OK:
            try:
                data = resp.json()
            except ValueError:
                data = {}
            logger.info("Vote accepted for election pair %s", election_pair_id)
            return VoteResult.from_code(code, data=data if isinstance(data, dict) else {})
        detail = _error_detail(resp)
        logger.error("Vote failed - HTTP %s: %s", resp.status_code, detail)
        return VoteResult.from_code(code, detail)
