"""
Exception taxonomy for the invoicing service.

ParseError and CacheMissRecoverable are recovered where they occur and logged.
SyncUnavailableError is handed to a SyncConflictResolver for a decision.
SyncAbortedError propagates to the caller and stops the run before any row
is aggregated.
"""

from typing import Optional


class InvoicingError(Exception):
    """Base class for invoicing service errors"""
    pass


class ParseError(InvoicingError):
    """A free-text segment that does not match its grammar"""

    def __init__(self, field: str, segment: str, reason: str):
        self.field = field
        self.segment = segment
        self.reason = reason
        super().__init__(f"{field}: {reason}: {segment!r}")


class CacheMissRecoverable(InvoicingError):
    """Distance lookup failed; the source system value is used instead"""

    def __init__(self, leg: str, origin: str, destination: str, cause: Optional[Exception] = None):
        self.leg = leg
        self.origin = origin
        self.destination = destination
        self.cause = cause
        super().__init__(f"Distance unavailable for {leg} leg {origin!r} -> {destination!r}: {cause}")


class DistanceResolverError(InvoicingError):
    """Raised by a DistanceResolver when no distance can be produced"""
    pass


class RemoteMirrorError(InvoicingError):
    """Raised by a RemoteMirror when the object store cannot be reached"""
    pass


class SyncUnavailableError(InvoicingError):
    """Remote mirror unreachable while opening or closing the cache"""

    def __init__(self, stage: str, cause: Exception):
        self.stage = stage
        self.cause = cause
        super().__init__(f"Remote mirror unavailable during {stage}: {cause}")


class SyncAbortedError(InvoicingError):
    """The caller chose to abort after the remote mirror was unavailable"""
    pass


class CacheEntryNotFoundError(InvoicingError):
    """No mileage cache entry exists with the requested id"""
    pass
