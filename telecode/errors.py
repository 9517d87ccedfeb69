"""Exception taxonomy for telecode."""


class BridgeError(Exception):
    """Base class for all errors raised by telecode."""


class ConfigError(BridgeError):
    """Missing or invalid runtime configuration."""


class ProjectAliasError(BridgeError):
    pass


class ProjectAliasNotFoundError(ProjectAliasError):
    pass


class ProjectAliasReservedError(ProjectAliasError):
    pass


class ProjectPathError(BridgeError):
    pass


class BackendRequestError(BridgeError):
    """The backend answered, but without a usable reply."""


class ModelCapabilityError(BridgeError):
    """The selected model cannot accept the attached input."""


class ModelFormatError(BridgeError):
    """A model reference is not in provider/model form."""


class ModelModalitiesError(BridgeError):
    """The model does not publish the metadata needed for a capability check."""


class FileDownloadError(BridgeError):
    """Downloading an attachment from the chat platform failed."""


class DownloadTimeoutError(FileDownloadError):
    """Downloading an attachment took longer than the configured limit."""


class FileTooLargeError(FileDownloadError):
    """An attachment exceeds the configured size limit."""

    def __init__(self, byte_length: int, max_bytes: int):
        self.byte_length = byte_length
        self.max_bytes = max_bytes
        super().__init__(
            f"File too large ({format_bytes(byte_length)}). Limit is {format_bytes(max_bytes)}."
        )


class OperationCancelledError(BridgeError):
    """An awaited operation was abandoned because its cancellation token fired."""


class InvalidQuestionStateError(BridgeError):
    """A question reached submission with an unanswered sub-question."""


class FreeformNotAllowedError(BridgeError):
    """A typed answer was given to a sub-question that only accepts options."""


def format_bytes(num_bytes: int) -> str:
    mb = num_bytes / (1024 * 1024)
    if mb >= 1:
        return f"{mb:.1f}MB"
    kb = num_bytes / 1024
    if kb >= 1:
        return f"{kb:.1f}KB"
    return f"{num_bytes}B"
