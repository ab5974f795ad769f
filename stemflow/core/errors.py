from __future__ import annotations


class StemJobError(Exception):
    """Base class for stem separation failures.

    ``user_message`` is what ends up in the job's ``error_message``; the
    exception text itself may carry more detail for logs.
    """

    default_message = "Stem separation failed."

    def __init__(self, message: str | None = None, *, user_message: str | None = None):
        super().__init__(message or self.default_message)
        self.user_message = user_message or message or self.default_message


class DispatchError(StemJobError):
    default_message = "The separation service rejected the audio."


class PollError(StemJobError):
    """Transport or parse failure while checking an upstream job. Transient."""

    default_message = "Could not check the separation status."


class ClassificationError(StemJobError):
    default_message = "Could not identify the requested stem in the separation output."


class MaterializeError(StemJobError):
    default_message = "Could not save the stem to your library."


class NotFoundError(StemJobError):
    default_message = "not found"


class StaleJobStateError(StemJobError):
    """A newer state was written for the job since it was read."""

    default_message = "stem job was updated concurrently"


class SeparationConfigError(StemJobError):
    default_message = "MVSEP API token is missing."
