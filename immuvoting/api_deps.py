"""
ImmuVoting - API Dependencies.
Shared dependencies for FastAPI routes.
"""

from __future__ import annotations

import logging
import hmac

from fastapi import Depends, HTTPException, Request
from fastapi.security import HTTPBasic, HTTPBasicCredentials

from immuvoting import config
from immuvoting.client import LedgerClient
from immuvoting.voting import VotingWorkflow

logger = logging.getLogger("uvicorn.error")

_basic = HTTPBasic(auto_error=False)


def get_client(request: Request) -> LedgerClient:
    """Inject the ledger client from app state."""
    return request.app.state.client


def get_workflow(request: Request) -> VotingWorkflow:
    """Inject the voting workflow from app state."""
    return request.app.state.workflow


def require_admin(credentials: HTTPBasicCredentials | None = Depends(_basic)) -> str:
    """HTTP Basic check against the configured admin credentials."""
    if credentials is None:
        raise HTTPException(
            status_code=401,
            detail="Missing credentials",
            headers={"WWW-Authenticate": "Basic"},
        )
    user_ok = hmac.compare_digest(
        credentials.username.encode("utf-8"), config.ADMIN_USER.encode("utf-8")
    )
    password_ok = hmac.compare_digest(
        credentials.password.encode("utf-8"), config.ADMIN_PASSWORD.encode("utf-8")
    )
    if not (user_ok and password_ok):
        logger.warning("Rejected credentials for user %r", credentials.username)
        raise HTTPException(
            status_code=401,
            detail="Invalid credentials",
            headers={"WWW-Authenticate": "Basic"},
        )
    return credentials.username
