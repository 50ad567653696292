from __future__ import annotations
from typing import Optional


class FatalClientError(Exception):
    """Raised when the client cannot continue; the process boundary decides what to do."""
    exit_code = 1


class LoginRejectedError(FatalClientError):
    """Raised when the login server answers ';' (registered name, bad or missing password)."""

    def __init__(self, nick: str, has_password: bool) -> None:
        self.nick = nick
        self.has_password = has_password
        super().__init__(
            f"LOGIN FAILED - The name {nick} is registered and "
            f"{'an invalid' if has_password else 'no'} password was provided."
        )


class LoginServerError(FatalClientError):
    """Raised when the login server returns a short diagnostic instead of an assertion."""

    def __init__(self, body: str) -> None:
        self.body = body
        super().__init__(f"LOGIN FAILED - {body}")


class LoginServerOverloadedError(FatalClientError):
    """Raised when the login server reports heavy load."""

    def __init__(self) -> None:
        super().__init__(
            "LOGIN FAILED - The login server is experiencing heavy load and "
            "cannot accommodate the connection right now."
        )


class LoginUnsuccessfulError(FatalClientError):
    """Raised when the login response parses but reports actionsuccess = false."""

    def __init__(self, body: str) -> None:
        self.body = body
        super().__init__(f"Unable to login; the request was unsuccessful: {body!r}")


class GuestLoginError(FatalClientError):
    """Raised when updateuser confirms we are still a guest after renaming."""

    def __init__(self, nick: str, status: Optional[str] = None) -> None:
        self.nick = nick
        self.status = status
        super().__init__(f"UPDATEUSER - failed to log in as {nick}, still a guest")


class ForcedRenameError(FatalClientError):
    """Raised when global staff judged the configured name inappropriate."""

    def __init__(self, nick: str) -> None:
        self.nick = nick
        super().__init__(
            f"FORCE-RENAMED - A global staff member considered this username ({nick}) "
            "inappropriate. Please rename the client to something more appropriate."
        )
