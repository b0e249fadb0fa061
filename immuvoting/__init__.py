"""
ImmuVoting - elections anyone can verify.

Voter registration and ballot casting on top of an append-only
authenticated ledger, plus client-side verification that the
published state is a tamper-free continuation of what was seen before.
"""

__version__ = "0.3.0"

from immuvoting.checkpoint import Checkpoint
from immuvoting.client import LedgerClient
from immuvoting.verified import VerifiedReadEngine
from immuvoting.voting import VotingWorkflow

__all__ = ["Checkpoint", "LedgerClient", "VerifiedReadEngine", "VotingWorkflow", "__version__"]
