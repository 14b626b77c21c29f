"""Error taxonomy shared by the messaging client and the relay.

AuthError is terminal and surfaced to the caller. TransportError is
transient: the connection manager retries it and only ever reports it as a
state change. HistoryFetchError is logged by the session, which then carries
on with an empty backlog.
"""


class TeamChatError(Exception):
    """Base exception for teamchat errors."""
    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class AuthError(TeamChatError):
    """Raised when the relay rejects the bearer credential."""
    def __init__(self, message: str = "Authentication error"):
        super().__init__(message)


class TransportError(TeamChatError):
    """Raised by a transport when the link to the relay is lost or unreachable."""


class HistoryFetchError(TeamChatError):
    """Raised when the history endpoint cannot be read."""
    def __init__(self, message: str, workspace_id: str, status_code: int = 0):
        self.workspace_id = workspace_id
        self.status_code = status_code
        super().__init__(f"History fetch for workspace {workspace_id} failed: {message}")
