"""Exception taxonomy for the sync engine.

Per-document failures (``RemoteWriteFailure``) are caught at the document
boundary and counted in the run report.  ``RemoteReadFailure`` is treated by
callers as "absent / unchanged".  ``StateCorruption`` aborts the whole run.
Transform problems are never raised: they are collected as warning strings on
``TransformResult.warnings``.
"""


class DocSyncError(Exception):
    """Base class for all sync engine errors."""


class RemoteError(DocSyncError):
    """A call to the remote content backend failed.

    Attributes:
        status_code: HTTP status code if the failure carried one.
    """

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code

    @property
    def not_found(self) -> bool:
        return self.status_code == 404


class RemoteReadFailure(RemoteError):
    """A page, children, or attachment lookup failed."""


class RemoteWriteFailure(RemoteError):
    """A create, update, or upload call failed."""


class StateCorruption(DocSyncError):
    """The persisted sync ledger could not be read or validated."""


class RenderError(DocSyncError):
    """The external diagram renderer failed to produce an image."""
