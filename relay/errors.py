from __future__ import annotations


class RelayError(RuntimeError):
    """Base class for failures that end a relay request."""

    status_code = 500


class InvalidRequest(RelayError):
    """The request body does not carry a usable message."""

    status_code = 400


class NotFound(RelayError):
    """The referenced conversation or chatbot card does not exist."""

    status_code = 404


class UpstreamTransportError(RelayError):
    """
    The inference backend refused the call, dropped the connection, or
    answered with an error status.
    """

    status_code = 502


class FrameDecodeError(RelayError):
    """A single upstream record could not be decoded."""

    status_code = 502
