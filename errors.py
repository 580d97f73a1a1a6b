"""
Error taxonomy shared by the search and report-quorum subsystems.

  NotFoundError        unknown stop / line / pending item / incident / user
  InvalidInputError    rejected before any state mutation
  ConflictError        duplicate reporter, or item not in an approvable state
  TransientStoreError  store unavailable or write lost after fresh re-reads
  ExhaustedError       pending report past expiry (terminal, moved to EXPIRED)

"No path found" is deliberately absent: the search returns an empty result
with warnings instead of raising.
"""


class TransitError(Exception):
    """Base class for every error the core raises on purpose."""


class NotFoundError(TransitError, LookupError):
    pass


class StopNotFoundError(NotFoundError):
    def __init__(self, stop_id: str) -> None:
        super().__init__(f"Stop '{stop_id}' not found.")
        self.stop_id = stop_id


class InvalidInputError(TransitError, ValueError):
    pass


class ConflictError(TransitError):
    pass


class TransientStoreError(TransitError):
    pass


class ExhaustedError(TransitError):
    pass
