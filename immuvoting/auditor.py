"""
ImmuVoting - Consistency Auditor.

Independent, client-side audit of a voting server. Keeps its own
trusted checkpoint, fetches the server's current state and a dual proof
over HTTP, and verifies that the server's history only ever grew.
Meant to run where the audited server cannot touch the verification
logic: an end user's machine, a CI job, a third-party monitor.

Usage:
    from immuvoting.auditor import ConsistencyAuditor
    from immuvoting.checkpoint import FileCheckpointCache

    cache = FileCheckpointCache("~/.immuvoting/audit", "election-2026")
    async with ConsistencyAuditor("http://localhost:8080", cache) as auditor:
        report = await auditor.audit()
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional

import httpx
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PublicKey

from immuvoting.checkpoint import Checkpoint, CheckpointCache
from immuvoting.exceptions import CorruptedDataError, NotFoundError, TransientStoreError
from immuvoting.proofs import verifiable_tx_from_dict, verify_dual_proof
from immuvoting.signing import verify_checkpoint_signature

__all__ = ["AuditReport", "ConsistencyAuditor"]

logger = logging.getLogger("immuvoting.auditor")


@dataclass
class AuditReport:
    """Outcome of one audit round."""

    tamper_free: bool
    first_run: bool
    local: Optional[Checkpoint]
    server: Checkpoint
    advanced: bool
    checked_at: str

    def to_dict(self) -> dict:
        return {
            "tamper_free": self.tamper_free,
            "first_run": self.first_run,
            "local_tx": self.local.tx_id if self.local else None,
            "server_tx": self.server.tx_id,
            "advanced": self.advanced,
            "checked_at": self.checked_at,
        }


class ConsistencyAuditor:
    """Checkpoint-to-checkpoint auditor for a remote voting server.

    Args:
        server_url: Base URL of the voting server.
        cache: Locally persisted trusted checkpoint.
        timeout: Request timeout in seconds.
        public_key: When set, the server's state must carry a valid signature.
    """

    def __init__(
        self,
        server_url: str,
        cache: CheckpointCache,
        timeout: float = 5.0,
        public_key: Optional[Ed25519PublicKey] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.server_url = server_url.rstrip("/")
        self.cache = cache
        self.public_key = public_key
        self._client = httpx.AsyncClient(
            base_url=self.server_url,
            timeout=timeout,
            transport=transport,
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> ConsistencyAuditor:
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()

    async def _get(self, path: str, params: Optional[dict] = None) -> dict[str, Any]:
        try:
            resp = await self._client.get(path, params=params)
        except httpx.HTTPError as e:
            raise TransientStoreError(f"error executing HTTP request {path}: {e}") from e
        if resp.status_code == 404:
            raise NotFoundError(f"{path} responded 404: {resp.text}")
        if resp.status_code < 200 or resp.status_code > 299:
            raise TransientStoreError(f"{path} responded with non-200 range code {resp.status_code}")
        try:
            return resp.json()
        except ValueError as e:
            raise TransientStoreError(f"error JSON-decoding response from {path}: {e}") from e

    async def fetch_state(self) -> Checkpoint:
        data = await self._get("/state")
        try:
            return Checkpoint.from_dict(data)
        except (KeyError, TypeError, ValueError) as e:
            raise CorruptedDataError(f"malformed server state {data!r}: {e}") from e

    async def audit(self) -> AuditReport:
        """Verify the server's current state against the local checkpoint.

        Raises CorruptedDataError when the server's history was rewritten;
        the local checkpoint is left untouched in that case.
        """
        async with self.cache.lock():
            local = await self.cache.load()
            server = await self.fetch_state()
            self._check_signature(server)
            now = datetime.now(timezone.utc).isoformat()

            if local is None:
                # Nothing to compare against: trust on first use.
                await self.cache.save(server)
                logger.info("First audit: trusting server state at tx %d", server.tx_id)
                return AuditReport(True, True, None, server, True, now)

            if server.tx_id == 0 and local.tx_id == 0:
                if not server.same_state(local):
                    raise CorruptedDataError("server reports a non-genesis digest for an empty ledger")
                return AuditReport(True, False, local, server, False, now)

            if server.tx_id == 0:
                logger.error("Tampered! server reports an empty ledger after tx %d was trusted", local.tx_id)
                raise CorruptedDataError(
                    f"server rolled back to the empty ledger after tx {local.tx_id} was trusted"
                )

            try:
                data = await self._get(
                    "/verifiable-tx",
                    params={"server_tx": server.tx_id, "local_tx": local.tx_id},
                )
            except NotFoundError as e:
                raise NotFoundError(
                    f"verification error: one of the 2 tx IDs was not found on server: {e}"
                ) from e
            try:
                proof = verifiable_tx_from_dict(data).dual_proof
            except (KeyError, TypeError, ValueError) as e:
                raise CorruptedDataError(f"malformed proof from server: {e}") from e

            if local.tx_id <= server.tx_id:
                source, target = local, server
            else:
                logger.warning(
                    "Server state tx %d is behind local checkpoint tx %d", server.tx_id, local.tx_id
                )
                source, target = server, local

            if not verify_dual_proof(proof, source.tx_id, target.tx_id, source.tx_hash, target.tx_hash):
                logger.error(
                    "Tampered! server tx %d is not a consistent extension of tx %d",
                    target.tx_id,
                    source.tx_id,
                )
                raise CorruptedDataError(
                    f"server state at tx {target.tx_id} is not consistent with tx {source.tx_id}"
                )

            advanced = server.tx_id > local.tx_id
            if advanced:
                await self.cache.save(server)
                logger.info("Audit OK: advanced local checkpoint to tx %d", server.tx_id)
            else:
                logger.info("Audit OK: server at tx %d", server.tx_id)
            return AuditReport(True, False, local, server, advanced, now)

    async def verdict(self) -> bool:
        """Tamper-free verdict for display; verification failures read as False."""
        try:
            report = await self.audit()
        except CorruptedDataError as e:
            logger.error("Audit failed: %s", e)
            return False
        return report.tamper_free

    def _check_signature(self, state: Checkpoint) -> None:
        if self.public_key is None:
            return
        if not verify_checkpoint_signature(self.public_key, state.tx_id, state.tx_hash, state.signature):
            raise CorruptedDataError(f"server state signature for tx {state.tx_id} does not verify")
