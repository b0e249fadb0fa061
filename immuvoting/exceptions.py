"""
ImmuVoting - Custom Exceptions.

Typed error hierarchy shared by the ledger client, the verification
engines and the voting workflow. The HTTP layer maps each family onto
one status code, so callers never have to parse messages.
"""


class ImmuVotingError(Exception):
    """Base exception for all ImmuVoting errors."""


# ─── Input ────────────────────────────────────────────────────────────


class ValidationError(ImmuVotingError):
    """Raised when a request is missing fields or carries invalid ones.

    Collects every violation instead of stopping at the first one.
    """

    def __init__(self, violations: list[str]):
        self.violations = list(violations)
        super().__init__(", ".join(self.violations))


# ─── Lookups ──────────────────────────────────────────────────────────


class NotFoundError(ImmuVotingError):
    """Raised when a key, voter or ballot does not exist."""


class KeyNotFound(NotFoundError):
    """Raised when a ledger key has never been written."""


class NotRegistered(NotFoundError):
    """Raised when neither the voter key nor the citizen alias resolves."""


class NoSuchBallot(NotFoundError):
    """Raised when a ballot key does not exist."""


class AlreadyExistsError(ImmuVotingError):
    """Raised when creating something that already exists."""


class AlreadyRegistered(AlreadyExistsError):
    """Raised when a citizen ID already has a voter record."""


# ─── State Machine ────────────────────────────────────────────────────


class PreconditionFailed(ImmuVotingError):
    """Raised when a one-way transition is not allowed from the current state."""


class NotApproved(PreconditionFailed):
    """Raised when an unapproved voter tries to vote."""


class AlreadyApproved(PreconditionFailed):
    """Raised when approving a voter twice."""


class AlreadyVoted(PreconditionFailed):
    """Raised when a voter tries to vote a second time."""


class AlreadyCast(PreconditionFailed):
    """Raised when a ballot already holds a non-zero vote."""


class WriteConflict(PreconditionFailed):
    """Raised by the store when a conditional write finds a key at another tx."""

    def __init__(self, key: bytes, expected_tx: int, actual_tx: int):
        self.key = key
        self.expected_tx = expected_tx
        self.actual_tx = actual_tx
        super().__init__(
            f"conditional write on {key!r} expected tx {expected_tx}, found {actual_tx}"
        )


# ─── Store ────────────────────────────────────────────────────────────


class StoreError(ImmuVotingError):
    """Raised when the ledger store fails for a non-transient reason."""


class IdentifierGenerationError(StoreError):
    """Raised when random voter/ballot identifiers cannot be generated."""


class TransientStoreError(StoreError):
    """Raised for network, timeout or session failures. Safe to retry."""


class StoreTimeoutError(TransientStoreError):
    """Raised when a store call exceeds its deadline."""


class SessionExpiredError(TransientStoreError):
    """Raised when the store session is gone and must be re-established."""


# ─── Verification ─────────────────────────────────────────────────────


class CorruptedDataError(ImmuVotingError):
    """Raised when an inclusion, consistency or signature check fails.

    Fatal for the current trust chain: the server's data is suspect, so
    retrying cannot help and the cached checkpoint is never advanced.
    """
