"""errors.py — What can go wrong, and what HTTP status it maps to.

Commands raise GatewayError subclasses; the server turns them into JSON
responses. Background failures (webhook, profile picture, contacts
refresh, presence/read/call side effects) never raise past the component
that started them; they are logged and dropped.
"""

from __future__ import annotations


class GatewayError(Exception):
    """Base for errors surfaced to API callers."""

    status: int = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class BadRequest(GatewayError):
    """Malformed or missing input, or a number that isn't a user."""

    status = 400


class ServiceUnavailable(GatewayError):
    """The session isn't usable for this action right now."""

    status = 503


class DriverFailure(GatewayError):
    """The session driver rejected the command.

    message is the caller-facing summary; details carries the driver's
    own error text.
    """

    status = 500

    def __init__(self, message: str, details: str = ""):
        super().__init__(message)
        self.details = details


class DriverError(RuntimeError):
    """Raised by a SessionDriver when a command fails on the driver side."""

    def __init__(self, message: str, code: str = "ERR_DRIVER"):
        super().__init__(message)
        self.code = code
