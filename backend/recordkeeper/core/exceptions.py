"""Domain errors raised by the import/export services and mapped by the routers."""


class TooManyRecordsError(ValueError):
    def __init__(self, actual: int, maximum: int):
        self.actual = actual
        self.maximum = maximum
        super().__init__(f"Import exceeds limit: {actual} records (max: {maximum})")


class ImportSessionNotFound(LookupError):
    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Import session {session_id} not found")


class InvalidSessionTransition(ValueError):
    def __init__(self, session_id: str, current: str, target: str):
        self.session_id = session_id
        self.current = current
        self.target = target
        super().__init__(f"Import session {session_id} cannot move from {current} to {target}")


class SessionNotResumable(ValueError):
    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__("Session cannot be resumed")


class ProgressChannelNotFound(LookupError):
    def __init__(self, channel_id: str):
        self.channel_id = channel_id
        super().__init__(f"Progress channel {channel_id} not found")


class ProgressChannelForbidden(PermissionError):
    def __init__(self, channel_id: str):
        self.channel_id = channel_id
        super().__init__(f"Progress channel {channel_id} belongs to another owner")


class ExportError(RuntimeError):
    """The export could not be assembled; carries a caller-safe message."""
