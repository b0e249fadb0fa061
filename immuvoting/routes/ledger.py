"""
ImmuVoting - Ledger Router.
Public state, consistency proofs and aggregate results for third-party auditors.
"""

import logging

from fastapi import APIRouter, Depends, Query

from immuvoting import __version__
from immuvoting.api_deps import get_client, get_workflow
from immuvoting.client import LedgerClient
from immuvoting.models import (
    RandomBallotResponse,
    StateResponse,
    StatsResponse,
    VerifiableTxResponse,
)
from immuvoting.proofs import verifiable_tx_to_dict
from immuvoting.voting import VotingWorkflow

logger = logging.getLogger("uvicorn.error")
router = APIRouter(tags=["ledger"])


@router.get("/state", response_model=StateResponse)
async def get_state(client: LedgerClient = Depends(get_client)) -> StateResponse:
    """Current ledger head, signed when the server holds a signing key."""
    checkpoint = await client.current_checkpoint()
    return StateResponse(**checkpoint.to_dict())


@router.get("/verifiable-tx", response_model=VerifiableTxResponse)
async def get_verifiable_tx(
    server_tx: int = Query(..., ge=0),
    local_tx: int = Query(..., ge=0),
    client: LedgerClient = Depends(get_client),
) -> VerifiableTxResponse:
    """Header of ``server_tx`` with a dual proof linking it to ``local_tx``.

    Either tx may be the older one; the proof always runs from the smaller
    id to the larger.
    """
    verifiable = await client.verifiable_tx(server_tx, prove_since_tx=local_tx)
    return VerifiableTxResponse(**verifiable_tx_to_dict(verifiable))


@router.get("/stats", response_model=StatsResponse)
async def get_stats(workflow: VotingWorkflow = Depends(get_workflow)) -> StatsResponse:
    tally = await workflow.tally()
    return StatsResponse(
        registered=tally.registered,
        voted=tally.voted,
        ballots=tally.ballots,
        results=tally.results,
    )


@router.get("/random-ballot", response_model=RandomBallotResponse)
async def get_random_ballot(workflow: VotingWorkflow = Depends(get_workflow)) -> RandomBallotResponse:
    """A random ballot and every value it ever held, for spot checks."""
    ballot = await workflow.random_ballot()
    return RandomBallotResponse(ballot_id=ballot.ballot_id, vote=ballot.vote, history=ballot.history)


@router.get("/health", tags=["health"])
async def health_check(client: LedgerClient = Depends(get_client)) -> dict:
    """Simple status check for load balancers."""
    checkpoint = await client.current_checkpoint()
    return {"status": "healthy", "tx_id": checkpoint.tx_id, "version": __version__}
