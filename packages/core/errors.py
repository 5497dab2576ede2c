"""Exceptions raised by the survey pipeline.

Stage functions raise these and let them propagate; the scan processor is
the only place that turns them into a ``failed`` scan status.
"""

from __future__ import annotations


class SurveyError(Exception):
    """Base class for every pipeline error."""


# ── parsing / conversion ─────────────────────────────────────────────
class MalformedHeader(SurveyError, ValueError):
    """The file header is missing fields or contradicts the file size."""


class TruncatedData(SurveyError, ValueError):
    """Fewer complete point records than the header declares."""


class UnsupportedContainerVariant(SurveyError, ValueError):
    """The container uses a feature with no conversion rule."""


# ── export ───────────────────────────────────────────────────────────
class EmptyGeometry(SurveyError, ValueError):
    """A plan was requested for a floor with no walls."""


# ── object storage ───────────────────────────────────────────────────
class DownloadFailure(SurveyError, IOError):
    pass


class UploadFailure(SurveyError, IOError):
    pass


# ── upload validation / bookkeeping ──────────────────────────────────
class UnsupportedFormat(SurveyError, ValueError):
    pass


class FileTooLarge(SurveyError, ValueError):
    pass


class InvalidTransition(SurveyError, ValueError):
    """A scan status change that the state machine does not allow."""


class NotFound(SurveyError, LookupError):
    pass


def describe(exc: BaseException) -> str:
    """Human-readable failure cause stored on a failed scan."""
    message = str(exc) or "no details"
    return f"{type(exc).__name__}: {message}"
