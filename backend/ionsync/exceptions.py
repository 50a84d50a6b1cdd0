"""
Exceptions raised while moving data from the ION DataFabric API into MongoDB.
"""


class SyncError(Exception):
    """Base exception for sync errors."""
    pass


class RemoteQueryError(SyncError):
    """A remote query finished in a failed state or never reached a terminal one."""
    pass


class RemoteSubmissionError(RemoteQueryError):
    """The query could not be submitted (transport, HTTP or auth failure)."""
    pass


class NotReadyError(RemoteQueryError):
    """Results were requested for a query that has not been seen as completed."""
    pass


class CountQueryError(SyncError):
    """The count query failed or returned something that is not a count. Fatal to the job."""
    pass


class PageQueryError(SyncError):
    """A single page query failed. The page is skipped and the job continues."""
    pass


class WriteError(SyncError):
    """The bulk upsert for a page failed outright."""
    pass


class StoreError(SyncError):
    """The document store could not be read."""
    pass


class JobConflictError(SyncError):
    """An active job already exists for the same entity and warehouse."""

    def __init__(self, message: str, job_id: str) -> None:
        super().__init__(message)
        self.job_id = job_id
