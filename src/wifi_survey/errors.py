"""Exception hierarchy for the survey pipeline.

Provider failures (:class:`Unavailable`, :class:`PermissionRevoked`) are
caught at the stage boundary inside the builder and recorded on the session.
Everything else reaches the caller of the controller.
"""

from __future__ import annotations

from typing import Iterable


class SurveyError(Exception):
    """Base class for all survey errors."""


class PermissionDenied(SurveyError):
    """Location access was refused; no device query may run."""


class Unavailable(SurveyError):
    """A single provider call could not produce a value."""


class PermissionRevoked(SurveyError):
    """The platform withdrew location access while a query was running."""


class IncompleteObservation(SurveyError):
    """``save()`` was called before every required field was collected."""

    def __init__(self, missing: Iterable[str]) -> None:
        self.missing = tuple(missing)
        super().__init__(
            "Observation is incomplete, missing: " + ", ".join(self.missing)
        )


class StoreError(SurveyError):
    """Base class for failures reported by an observation store."""


class WriteRejected(StoreError):
    """The store refused the record (validation, auth, quota)."""


class Unreachable(StoreError):
    """The store could not be contacted or failed server-side."""


class CollectionInProgress(SurveyError):
    """A collection run is still pending; a second one may not interleave."""
