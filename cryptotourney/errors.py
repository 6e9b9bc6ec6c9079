"""
cryptotourney/errors.py - Exception taxonomy for the sync layer.

Read paths (tournament lists, player boards) catch these and degrade to empty
results. Action paths (join, enter, register, signing) let them propagate so
the caller can show the message to the user.
"""


class TourneyError(Exception):
    """Base class for every error raised by cryptotourney."""


# ============================================================================
# Remote API (raised by the request executor)
# ============================================================================


class RequestError(TourneyError):
    """A request to the backend failed after the executor gave up."""

    def __init__(self, message: str, endpoint: str | None = None, attempts: int = 0):
        super().__init__(message)
        self.endpoint = endpoint
        self.attempts = attempts


class NetworkFailure(RequestError):
    """The backend could not be reached in time."""


class RequestTimeout(NetworkFailure):
    """Every attempt hit the per-attempt timeout."""


class Unreachable(NetworkFailure):
    """No response at all: DNS, refused connection, dropped socket."""


class ServerError(RequestError):
    """The backend answered with an error status and no usable message."""

    def __init__(self, message: str, status_code: int | None = None, **kwargs):
        super().__init__(message, **kwargs)
        self.status_code = status_code


class RemoteRejection(RequestError):
    """The backend rejected the request with a structured error message."""

    def __init__(self, message: str, status_code: int | None = None, **kwargs):
        super().__init__(message, **kwargs)
        self.status_code = status_code


# ============================================================================
# Signing agent
# ============================================================================

# EIP-1193 provider error codes
USER_REJECTED_CODE = 4001
UNRECOGNIZED_CHAIN_CODE = 4902


class AgentError(TourneyError):
    """The signing agent failed a request."""

    def __init__(self, message: str, code: int | None = None):
        super().__init__(message)
        self.code = code


class UserRejection(AgentError):
    """The user declined the request in the signing agent. Never retried."""

    def __init__(self, message: str = "Request rejected by user"):
        super().__init__(message, code=USER_REJECTED_CODE)


class AgentUnavailable(AgentError):
    """No signing agent is configured for this process."""


class ChainMismatch(TourneyError):
    """The agent is connected to a different chain than the one required."""

    def __init__(self, expected: int, actual: int | None):
        super().__init__(f"Wrong network: expected chain {expected}, connected to {actual}")
        self.expected = expected
        self.actual = actual


class ContractError(TourneyError):
    """An on-chain call failed or reverted."""


# ============================================================================
# Tournament rules
# ============================================================================


class JoinNotAllowed(TourneyError):
    """A join was refused client-side before any network call."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class InvalidTransition(TourneyError):
    """A tournament status change that the one-way lifecycle forbids."""

    def __init__(self, from_status, to_status):
        super().__init__(f"Cannot transition tournament from {from_status.name} to {to_status.name}")
        self.from_status = from_status
        self.to_status = to_status
