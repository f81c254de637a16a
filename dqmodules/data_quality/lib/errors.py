from __future__ import annotations


class DataQualityError(Exception):
    """Base class for engine failures surfaced to callers."""


# ---- Dataset / cursor -------------------------------------------------------


class DatasetUnavailable(DataQualityError):
    """The underlying source could not be queried. Fatal for the invocation."""


class OutOfRange(DataQualityError, ValueError):
    """Bad seek or page request. Local to the caller; no job state changes."""


# ---- Job lifecycle ----------------------------------------------------------


class JobNotFound(DataQualityError, LookupError):
    """Unknown job id."""


class JobExpired(DataQualityError):
    """
    Cursor store entries for the job are past their TTL.
    The job is abandoned; it is never restarted from zero automatically.
    """


class JobNotActionable(DataQualityError):
    """The job is in a terminal status (Completed/Error) and cannot be resumed."""


class JobBusy(DataQualityError):
    """Another invocation (possibly in another process) holds the job's lease."""


class RecordNotFound(DataQualityError, LookupError):
    """Unknown issue or duplicate id."""


# ---- Infrastructure ---------------------------------------------------------


class StoreUnavailable(DataQualityError):
    """The cursor store could not be read or written."""


class CheckpointError(StoreUnavailable):
    """A checkpoint write failed; the job keeps its previous checkpoint."""


class StateNotFound(LookupError):
    """No cursor-store entry exists for the key."""


class StateExpired(StateNotFound):
    """A cursor-store entry existed but is past its expiry."""


# ---- Evaluation -------------------------------------------------------------

# Issue type recorded when an evaluator raises for a single record.
EVALUATION_ERROR = "EvaluationError"


class EvaluationError(DataQualityError):
    """Evaluators may raise this for a record they cannot judge."""
