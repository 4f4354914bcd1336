"""Governance error types.

The API layer maps these onto HTTP status codes; background jobs log and
isolate them. ``ConflictError.code`` is the stable machine-readable tag
clients switch on (e.g. ``AlreadyVoting``).
"""


class GovernanceError(Exception):
    """Base class for governance failures."""

    status_code = 500

    def __init__(self, message: str, code: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or type(self).__name__

    def to_dict(self) -> dict[str, str]:
        return {"error": self.code, "message": self.message}


class ValidationError(GovernanceError):
    """Malformed input; nothing was applied."""

    status_code = 422


class ConflictError(GovernanceError):
    """The current epoch is in the wrong state for the request."""

    status_code = 409


class NotFoundError(GovernanceError):
    """The referenced epoch, keyword or ballot does not exist."""

    status_code = 404


class WeightNormalizationError(GovernanceError):
    """Weight normalization could not produce a valid vector."""

    status_code = 500


class NoActiveEpochError(GovernanceError):
    """No current epoch exists yet; governance has not been bootstrapped."""

    status_code = 503

    def __init__(self, message: str = "No active governance epoch") -> None:
        super().__init__(message, code="NoActiveEpoch")
