"""
Exception taxonomy for the monitoring and purchase engine
"""


class TicketScoutError(Exception):
    """Base class for every engine error"""


class ConfigurationError(TicketScoutError):
    """Invalid engine settings or profile record"""


class SessionCreationError(TicketScoutError):
    """HTTP session could not be built from the browser"""

    def __init__(self, profile_id: str, reason: str):
        super().__init__(f"Failed to create session for {profile_id}: {reason}")
        self.profile_id = profile_id
        self.reason = reason


class SessionRefreshError(TicketScoutError):
    """Cookies could not be re-read from the browser; caller should recreate the session"""

    def __init__(self, profile_id: str, reason: str):
        super().__init__(f"Failed to refresh session for {profile_id}: {reason}")
        self.profile_id = profile_id
        self.reason = reason


class RetriesExhaustedError(TicketScoutError):
    """Raised after the last retryable failure of a retried operation"""

    def __init__(self, operation: str, attempts: int, last_error: BaseException):
        super().__init__(f"{operation} failed after {attempts} attempts: {last_error}")
        self.operation = operation
        self.attempts = attempts
        self.last_error = last_error


class MonitoringStopped(TicketScoutError):
    """Cooperative stop was requested while waiting"""
