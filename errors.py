# errors.py
from typing import Optional


class LabSyncError(Exception):
    """Base class for lab-test delivery errors"""


class ValidationFailed(LabSyncError, ValueError):
    """Malformed input (missing visit id, empty test name). Never retried."""


class DeliveryFailed(LabSyncError):
    """
    Every delivery strategy failed for every record.
    Carries the last transport error and the per-record result.
    """

    def __init__(self, message: str, last_error: Optional[BaseException] = None, result=None):
        super().__init__(message)
        self.last_error = last_error
        self.result = result


class PersistenceFailed(LabSyncError):
    """The local store could not be written. Data may be lost if ignored."""


class DrainInProgress(LabSyncError):
    """Another drain is already running"""


class DeliveryCancelled(DeliveryFailed):
    """Delivery was stopped by a cancel request before any record landed"""
