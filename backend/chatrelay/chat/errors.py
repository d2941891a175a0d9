"""Error taxonomy for relay actions.

Every error carries the HTTP status the route layer answers with, so route
handlers can catch ``RelayError`` once per action.
"""


class RelayError(Exception):
    """Base class for failures of a single relay action."""

    status_code: int = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class StoreUnavailable(RelayError):
    """The backing store could not be reached or failed the operation."""

    status_code = 503


class AlreadyPresent(RelayError):
    """Join rejected: the username is already in the active set."""

    status_code = 409

    def __init__(self, username: str) -> None:
        super().__init__(f"Username '{username}' is already taken")
        self.username = username


class NotPresent(RelayError):
    """Leave rejected: the username is not in the active set."""

    status_code = 404

    def __init__(self, username: str) -> None:
        super().__init__(f"Username '{username}' is not in the room")
        self.username = username


class MalformedInput(RelayError):
    """Missing or oversized username or message text."""

    status_code = 400
