"""
Render engine error taxonomy.

ValidationError is raised synchronously at submit time. The stage errors
(FetchError, TranscodeError, PublishError) end a job in the "error" state
with str(exc) as the user-visible message. CleanupWarning is only ever
printed.
"""


class RenderError(Exception):
    """Base class for all render engine failures."""


class ValidationError(RenderError):
    """Malformed submission; the job is never created."""


class FetchError(RenderError):
    """Source or overlay-audio download failed."""


class TranscodeError(RenderError):
    """FFmpeg exited non-zero, crashed or timed out."""


class PublishError(RenderError):
    """Upload of the final artifact to storage failed."""


class CleanupWarning(UserWarning):
    """A temp file could not be removed. Never affects job status."""
