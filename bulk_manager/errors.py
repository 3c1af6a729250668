"""
Error types shared by the bulk operation core.
"""


class BulkManagerError(Exception):
    """Base exception for bulk manager errors."""
    pass


class ValidationError(BulkManagerError):
    """Invalid rule, parameters or selection. Raised before any remote call."""
    pass


class RollbackIneligibleError(BulkManagerError):
    """Entry is missing, not rollback-able, or uses an unsupported rollback type."""
    pass


class StorageError(BulkManagerError):
    """Writing to the local history storage failed."""
    pass
