"""
ImmuVoting - Voting Workflow.

Registration, approval, vote casting, status and tally on top of the
ledger's atomic batch write.

State machines (both one-way):
    voter:  Registered -> Approved -> Voted
    ballot: Uncast (0) -> Cast (candidate code)

Each transition is validated on freshly read state and then written as
one atomic batch whose writes are conditional on the keys still being
at the transaction they were read at, so two concurrent casts on the
same ballot cannot both succeed.
"""

from __future__ import annotations

import json
import logging
import re
import secrets
import struct
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Callable, Optional

from immuvoting import config
from immuvoting.client import LedgerClient
from immuvoting.exceptions import (
    AlreadyApproved,
    AlreadyCast,
    AlreadyRegistered,
    AlreadyVoted,
    IdentifierGenerationError,
    KeyNotFound,
    NoSuchBallot,
    NotApproved,
    NotFoundError,
    NotRegistered,
    StoreError,
    ValidationError,
    WriteConflict,
)
from immuvoting.store.base import Entry, KVWrite, ReferenceWrite
from immuvoting.verified import VerifiedReadEngine

logger = logging.getLogger("immuvoting.voting")

UNCAST = 0
MAX_VOTE = 0xFFFF

_EMAIL_RE = re.compile(
    r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+@[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?"
    r"(?:\.[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?)*$"
)


def is_email_valid(email: str) -> bool:
    if len(email) < 3 or len(email) > 254:
        return False
    return _EMAIL_RE.match(email) is not None


def new_identifier() -> str:
    """128 random bits formatted as 8-4-4-4-12 hex."""
    b = secrets.token_bytes(16)
    return f"{b[0:4].hex()}-{b[4:6].hex()}-{b[6:8].hex()}-{b[8:10].hex()}-{b[10:].hex()}"


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# ─── Records ──────────────────────────────────────────────────────────


@dataclass
class Voter:
    citizen_id: str
    name: str
    address: str
    email: str
    registered_at: str
    approved_at: Optional[str] = None
    voted_at: Optional[str] = None

    def to_bytes(self) -> bytes:
        return json.dumps(asdict(self), sort_keys=True, separators=(",", ":")).encode("utf-8")

    @classmethod
    def from_bytes(cls, raw: bytes) -> Voter:
        data = json.loads(raw)
        return cls(
            citizen_id=data["citizen_id"],
            name=data["name"],
            address=data["address"],
            email=data["email"],
            registered_at=data["registered_at"],
            approved_at=data.get("approved_at"),
            voted_at=data.get("voted_at"),
        )


def encode_ballot(vote: int) -> bytes:
    return struct.pack(">H", vote)


def decode_ballot(raw: bytes) -> int:
    if len(raw) != 2:
        raise ValueError(f"ballot value must be 2 bytes, got {len(raw)}")
    return struct.unpack(">H", raw)[0]


# ─── Results ──────────────────────────────────────────────────────────


@dataclass
class RegisterVoterResponse:
    voter_id: str
    ballot_id: str


@dataclass
class VoterStatus:
    approved: Optional[str]
    voted: Optional[str]


@dataclass
class BallotView:
    ballot_id: str
    vote: int


@dataclass
class RandomBallot:
    ballot_id: str
    vote: int
    history: list[int] = field(default_factory=list)


@dataclass
class Tally:
    registered: int = 0
    voted: int = 0
    ballots: int = 0
    results: dict[int, int] = field(default_factory=dict)


# ─── Workflow ─────────────────────────────────────────────────────────


class VotingWorkflow:
    """Voter and ballot operations against one ledger.

    Args:
        client: Ledger handle used for plain reads and batch writes.
        engine: Verified read engine; used for reads when ``verified_reads``.
        candidates: Valid candidate codes (non-zero uint16).
        verified_reads: Read voters and ballots through ``engine``.
        id_factory: Source of voter and ballot identifiers.
    """

    def __init__(
        self,
        client: LedgerClient,
        engine: Optional[VerifiedReadEngine] = None,
        candidates: Optional[tuple[int, ...]] = None,
        verified_reads: bool = False,
        id_factory: Callable[[], str] = new_identifier,
        scan_page_size: Optional[int] = None,
    ):
        if verified_reads and engine is None:
            raise ValueError("verified_reads requires a VerifiedReadEngine")
        self.client = client
        self.engine = engine
        self.candidates = tuple(candidates if candidates is not None else config.CANDIDATES)
        self.verified_reads = verified_reads
        self.id_factory = id_factory
        self.scan_page_size = scan_page_size or config.SCAN_PAGE_SIZE

    @staticmethod
    def voter_key(voter_id: str) -> bytes:
        return (config.VOTER_PREFIX + voter_id).encode("utf-8")

    @staticmethod
    def citizen_key(citizen_id: str) -> bytes:
        return (config.CITIZEN_PREFIX + citizen_id).encode("utf-8")

    @staticmethod
    def ballot_key(ballot_id: str) -> bytes:
        return (config.BALLOT_PREFIX + ballot_id).encode("utf-8")

    async def _read(self, key: bytes) -> Entry:
        if self.verified_reads:
            return await self.engine.verified_get(key)
        return await self.client.get(key)

    async def _resolve_voter(self, voter_or_citizen_id: str) -> tuple[Entry, Voter]:
        """Find a voter by voter ID, falling back to the citizen alias.

        The returned entry's key is always the canonical voter key.
        """
        try:
            entry = await self._read(self.voter_key(voter_or_citizen_id))
        except KeyNotFound:
            try:
                entry = await self._read(self.citizen_key(voter_or_citizen_id))
            except KeyNotFound as e:
                raise NotRegistered("voter has never been registered") from e
        try:
            return entry, Voter.from_bytes(entry.value)
        except (ValueError, KeyError, TypeError) as e:
            raise StoreError(f"error decoding persisted voter {entry.key!r}: {e}") from e

    async def _read_ballot(self, ballot_id: str) -> tuple[Entry, int]:
        try:
            entry = await self._read(self.ballot_key(ballot_id))
        except KeyNotFound as e:
            raise NoSuchBallot("no such ballot") from e
        try:
            return entry, decode_ballot(entry.value)
        except ValueError as e:
            raise StoreError(f"error decoding persisted ballot {ballot_id}: {e}") from e

    # ─── Registration ────────────────────────────────────────────────

    async def register_voter(
        self, citizen_id: str, name: str, address: str, email: str
    ) -> RegisterVoterResponse:
        errs = []
        if not citizen_id:
            errs.append("citizen ID is missing")
        if not name:
            errs.append("name is missing")
        if not address:
            errs.append("address is missing")
        if not is_email_valid(email or ""):
            errs.append("email is invalid")
        if errs:
            raise ValidationError(errs)

        citizen_key = self.citizen_key(citizen_id)
        try:
            await self.client.get(citizen_key)
        except KeyNotFound:
            pass
        else:
            raise AlreadyRegistered("already registered")

        try:
            voter_id = self.id_factory()
            ballot_id = self.id_factory()
        except Exception as e:
            raise IdentifierGenerationError(f"error generating voter/ballot IDs: {e}") from e

        voter = Voter(
            citizen_id=citizen_id,
            name=name,
            address=address,
            email=email,
            registered_at=now_iso(),
        )
        voter_key = self.voter_key(voter_id)
        try:
            tx_id = await self.client.atomic_batch(
                [
                    KVWrite(voter_key, voter.to_bytes(), expected_tx=0),
                    ReferenceWrite(citizen_key, voter_key, expected_tx=0),
                    KVWrite(self.ballot_key(ballot_id), encode_ballot(UNCAST), expected_tx=0),
                ]
            )
        except WriteConflict as e:
            if e.key == citizen_key:
                raise AlreadyRegistered("already registered") from e
            raise

        logger.info("Registered voter %s with ballot %s at tx %d", voter_id, ballot_id, tx_id)
        return RegisterVoterResponse(voter_id=voter_id, ballot_id=ballot_id)

    async def approve_voter(self, voter_or_citizen_id: str) -> Voter:
        if not voter_or_citizen_id:
            raise ValidationError(["voter ID is missing"])

        entry, voter = await self._resolve_voter(voter_or_citizen_id)
        if voter.approved_at:
            raise AlreadyApproved("voter registration has already been approved")

        voter.approved_at = now_iso()
        try:
            await self.client.atomic_batch(
                [KVWrite(entry.key, voter.to_bytes(), expected_tx=entry.tx)]
            )
        except WriteConflict as e:
            raise AlreadyApproved("voter changed while being approved") from e

        logger.info("Approved voter %s", entry.key.decode("utf-8", "replace"))
        return voter

    # ─── Voting ──────────────────────────────────────────────────────

    async def cast_vote(self, voter_or_citizen_id: str, ballot_id: str, vote: int) -> int:
        errs = []
        if not voter_or_citizen_id:
            errs.append("voter ID is missing")
        if not ballot_id:
            errs.append("ballot ID is missing")
        if not vote:
            errs.append("vote is missing")
        elif vote < 0 or vote > MAX_VOTE or vote not in self.candidates:
            errs.append("invalid vote")
        if errs:
            raise ValidationError(errs)

        voter_entry, voter = await self._resolve_voter(voter_or_citizen_id)
        if not voter.approved_at:
            raise NotApproved("voter registration has never been approved")
        if voter.voted_at:
            raise AlreadyVoted("voter has already voted")

        ballot_entry, existing_vote = await self._read_ballot(ballot_id)
        if existing_vote != UNCAST:
            raise AlreadyCast("ballot has been already cast before")

        voter.voted_at = now_iso()
        try:
            tx_id = await self.client.atomic_batch(
                [
                    KVWrite(voter_entry.key, voter.to_bytes(), expected_tx=voter_entry.tx),
                    KVWrite(ballot_entry.key, encode_ballot(vote), expected_tx=ballot_entry.tx),
                ]
            )
        except WriteConflict as e:
            if e.key == ballot_entry.key:
                raise AlreadyCast("ballot has been already cast before") from e
            raise AlreadyVoted("voter has already voted") from e

        logger.info("Ballot %s cast at tx %d", ballot_id, tx_id)
        return tx_id

    # ─── Queries ─────────────────────────────────────────────────────

    async def get_voter_status(self, voter_or_citizen_id: str) -> VoterStatus:
        if not voter_or_citizen_id:
            raise ValidationError(["voter_id query param is missing"])
        _entry, voter = await self._resolve_voter(voter_or_citizen_id)
        return VoterStatus(approved=voter.approved_at, voted=voter.voted_at)

    async def get_ballot(self, ballot_id: str) -> BallotView:
        if not ballot_id:
            raise ValidationError(["ballot_id query param is missing"])
        _entry, vote = await self._read_ballot(ballot_id)
        return BallotView(ballot_id=ballot_id, vote=vote)

    async def random_ballot(self) -> RandomBallot:
        """A uniformly chosen ballot with every value it has ever held."""
        entries = await self.client.scan_all(config.BALLOT_PREFIX.encode(), self.scan_page_size)
        if not entries:
            raise NotFoundError("no ballots have been cast yet")

        ballots = []
        for entry in entries:
            try:
                ballots.append((entry, decode_ballot(entry.value)))
            except ValueError as e:
                logger.error("ERROR: ballot %r is malformed: %s", entry.key, e)
        if not ballots:
            raise NotFoundError("no well-formed ballots found")

        chosen, vote = ballots[secrets.randbelow(len(ballots))]
        ballot_id = chosen.key.decode("utf-8")[len(config.BALLOT_PREFIX):]
        history = []
        for item in await self.client.history(chosen.key):
            try:
                history.append(decode_ballot(item.value))
            except ValueError:
                logger.error("ERROR: ballot %s has a malformed value at tx %d", ballot_id, item.tx)
        return RandomBallot(ballot_id=ballot_id, vote=vote, history=history)

    async def tally(self) -> Tally:
        """Count registrations, votes and per-candidate results.

        Malformed records are logged and skipped, never fatal.
        """
        result = Tally()

        voters = await self.client.scan_all(config.VOTER_PREFIX.encode(), self.scan_page_size)
        result.registered = len(voters)
        for entry in voters:
            try:
                voter = Voter.from_bytes(entry.value)
            except (ValueError, KeyError, TypeError) as e:
                logger.error("ERROR decoding voter %r with key %r: %s", entry.value, entry.key, e)
                continue
            if voter.voted_at:
                result.voted += 1

        ballots = await self.client.scan_all(config.BALLOT_PREFIX.encode(), self.scan_page_size)
        for entry in ballots:
            try:
                vote = decode_ballot(entry.value)
            except ValueError as e:
                logger.error("ERROR: ballot %r is malformed: %s", entry.key, e)
                continue
            if vote == UNCAST:
                continue
            if vote not in self.candidates:
                logger.error("ERROR: ballot %r has invalid vote %d", entry.key, vote)
                continue
            result.results[vote] = result.results.get(vote, 0) + 1
            result.ballots += 1

        return result
