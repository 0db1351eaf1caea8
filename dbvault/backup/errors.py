"""Error taxonomy for the backup engine."""


class BackupError(Exception):
    """Base class for every failure raised by the backup engine."""

    retryable = False

    @property
    def kind(self) -> str:
        return self.__class__.__name__


class SnapshotError(BackupError):
    """The source database export failed. Existing backups are unaffected."""

    retryable = True


class EncryptionError(BackupError):
    """A cipher operation failed or an artifact could not be authenticated."""


class IntegrityError(BackupError):
    """Decrypted content does not match the checksum recorded at creation."""


class StorageError(BackupError):
    """Disk or filesystem failure in the backup directory."""

    retryable = True


class NotFoundError(BackupError):
    """A filename is absent from the ledger or its artifact is missing."""


class CycleInProgressError(BackupError):
    """A backup cycle is already running and the caller declined to wait."""

    retryable = True
