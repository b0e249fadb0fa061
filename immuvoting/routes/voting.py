"""
ImmuVoting - Voting Router.
Voter registration, approval, casting and per-voter lookups (admin only).
"""

import logging

from fastapi import APIRouter, Depends, Query, Response

from immuvoting.api_deps import get_workflow, require_admin
from immuvoting.models import (
    ApproveVoterRequest,
    ApproveVoterResponse,
    BallotResponse,
    RegisterVoterRequest,
    RegisterVoterResponse,
    VoteRequest,
    VoterStatusResponse,
)
from immuvoting.voting import VotingWorkflow

logger = logging.getLogger("uvicorn.error")
router = APIRouter(tags=["voting"], dependencies=[Depends(require_admin)])


@router.post("/register-voter", response_model=RegisterVoterResponse)
async def register_voter(
    req: RegisterVoterRequest,
    workflow: VotingWorkflow = Depends(get_workflow),
) -> RegisterVoterResponse:
    """Register a citizen and issue their ballot."""
    result = await workflow.register_voter(req.citizen_id, req.name, req.address, req.email)
    return RegisterVoterResponse(voter_id=result.voter_id, ballot_id=result.ballot_id)


@router.post("/approve-voter", response_model=ApproveVoterResponse)
async def approve_voter(
    req: ApproveVoterRequest,
    workflow: VotingWorkflow = Depends(get_workflow),
) -> ApproveVoterResponse:
    voter = await workflow.approve_voter(req.voter_id)
    return ApproveVoterResponse(voter_id=req.voter_id, approved=voter.approved_at)


@router.post("/vote", status_code=204)
async def vote(
    req: VoteRequest,
    workflow: VotingWorkflow = Depends(get_workflow),
) -> Response:
    """Cast a ballot. Each voter votes once and each ballot is cast once."""
    await workflow.cast_vote(req.voter_id, req.ballot_id, req.vote)
    return Response(status_code=204)


@router.get("/voter-status", response_model=VoterStatusResponse)
async def voter_status(
    voter_id: str = Query("", max_length=128),
    workflow: VotingWorkflow = Depends(get_workflow),
) -> VoterStatusResponse:
    status = await workflow.get_voter_status(voter_id)
    return VoterStatusResponse(approved=status.approved, voted=status.voted)


@router.get("/ballot", response_model=BallotResponse)
async def ballot(
    ballot_id: str = Query("", max_length=128),
    workflow: VotingWorkflow = Depends(get_workflow),
) -> BallotResponse:
    view = await workflow.get_ballot(ballot_id)
    return BallotResponse(ballot_id=view.ballot_id, vote=view.vote)
