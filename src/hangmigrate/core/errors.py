class HangMigrateError(Exception):
    """Base error for all user-facing hangmigrate exceptions."""


class ConfigurationError(HangMigrateError):
    """Raised when configuration is invalid or incomplete."""


class AttachmentStoreError(HangMigrateError):
    """Raised when the attachment store cannot complete a filesystem operation."""


class AttachmentExistsError(AttachmentStoreError):
    """Raised when an attachment key is already claimed or its file already exists."""


class AttachmentNotFoundError(HangMigrateError):
    """Raised when no stored attachment can be found for a key."""


class SnapshotError(HangMigrateError):
    """Raised when an attachment index snapshot cannot be read."""


class DownloadError(HangMigrateError):
    """Raised when a download candidate cannot produce an attachment."""


class CookieJarError(HangMigrateError):
    """Raised when a cookie file cannot be parsed."""


class ManifestError(HangMigrateError):
    """Raised when a download manifest or import plan is malformed."""


class ExportError(HangMigrateError):
    """Raised when a bulk import record cannot be written."""


class RecordOrderError(ExportError):
    """Raised when a record would violate the bulk import kind order."""
