"""Application error hierarchy shared by the filter, stores and workers."""


class AppError(Exception):
    """Base class for every error raised by the notification service."""

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def __str__(self) -> str:
        return self.message


class BlockedError(AppError):
    """A recipient is excluded by a block list or is missing from an allow list."""


class NotFoundError(AppError):
    """A requested row or entity does not exist."""


class TemplateError(AppError):
    """A template is unknown or cannot be used; retrying will not help."""


class DatabaseError(AppError):
    """A storage-level failure; usually transient and worth retrying."""