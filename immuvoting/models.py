"""
ImmuVoting - API Models.
Pydantic request/response shapes for the HTTP layer.

Request fields default to empty so the workflow can report every missing
field at once instead of failing on the first one.
"""

from typing import Any

from pydantic import BaseModel, Field


class RegisterVoterRequest(BaseModel):
    citizen_id: str = Field("", max_length=128, description="National citizen identifier")
    name: str = Field("", max_length=256)
    address: str = Field("", max_length=512)
    email: str = Field("", max_length=254)


class RegisterVoterResponse(BaseModel):
    voter_id: str
    ballot_id: str


class ApproveVoterRequest(BaseModel):
    voter_id: str = Field("", max_length=128, description="Voter ID or citizen ID")


class ApproveVoterResponse(BaseModel):
    voter_id: str
    approved: str


class VoteRequest(BaseModel):
    voter_id: str = Field("", max_length=128, description="Voter ID or citizen ID")
    ballot_id: str = Field("", max_length=128)
    vote: int = Field(0, description="Candidate code")


class VoterStatusResponse(BaseModel):
    approved: str | None = None
    voted: str | None = None


class BallotResponse(BaseModel):
    ballot_id: str
    vote: int


class RandomBallotResponse(BaseModel):
    ballot_id: str
    vote: int
    history: list[int]


class StateResponse(BaseModel):
    tx_id: int
    tx_hash: str = Field(..., description="Base64 accumulated hash at tx_id")
    signature: str | None = Field(None, description="Base64 Ed25519 signature, if the server signs")


class StatsResponse(BaseModel):
    registered: int
    voted: int
    ballots: int
    results: dict[int, int]


class VerifiableTxResponse(BaseModel):
    tx: dict[str, Any]
    dual_proof: dict[str, Any]
    signature: str | None = None
