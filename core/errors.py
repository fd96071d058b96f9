"""
Errors raised by the attribution and commission core.

Expected outcomes (not attributable, superseded link, duplicate click,
commission already recorded) are structured results, not exceptions.
"""


class AffiliateLedgerError(Exception):
    """Base class for errors surfaced to route handlers."""


class DataStoreUnavailable(AffiliateLedgerError):
    """The database could not be reached or the write failed at the driver level."""


class InvalidSettingsValue(AffiliateLedgerError):
    """An admin submitted an out-of-range or malformed setting."""


class CommissionNotFound(AffiliateLedgerError):
    pass


class CommissionNotHeld(AffiliateLedgerError):
    def __init__(self, commission_id: str, status: str):
        super().__init__(f"Commission is not in 'held' status (current: {status})")
        self.commission_id = commission_id
        self.status = status


class InvalidPayout(AffiliateLedgerError):
    pass


class InvalidTrackingLink(AffiliateLedgerError):
    pass


class TrackingLinkConflict(AffiliateLedgerError):
    """The custom link is already in use by another affiliate."""


class QuizSessionNotFound(AffiliateLedgerError):
    pass
