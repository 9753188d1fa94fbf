import re

CONNECTION_FAILURE_PATTERN = re.compile(
    r"connection to server|could not connect|password authentication|server closed the connection"
    r"|could not translate host|connection refused",
    re.IGNORECASE,
)


class UploadError(Exception):
    """Base class for failures raised by the inventory upload pipeline."""


class MalformedInput(UploadError):
    """The uploaded file is empty, unreadable, or has no data rows."""


class RowValidationFailure(UploadError):
    """A single spreadsheet row cannot be normalized; counted, never fatal."""


class ReferenceCreationFailure(UploadError):
    """Creating or re-reading missing branches/products failed."""


class StorageFailure(UploadError):
    """A batch upsert or the history write failed; the upload is rolled back."""


def describe_db_error(exc: Exception) -> str:
    # Driver message only: the SQLAlchemy wrapper's str() carries SQL and bound parameters.
    orig = getattr(exc, "orig", None) or exc
    message = str(orig).strip().splitlines()
    # Connection errors name the host, port and user.
    if getattr(exc, "connection_invalidated", False) or CONNECTION_FAILURE_PATTERN.search(str(orig)):
        return f"{type(orig).__name__}: database connection failed"
    return f"{type(orig).__name__}: {message[0]}" if message else type(orig).__name__
