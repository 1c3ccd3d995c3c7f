"""Failure taxonomy of the chat core.

Each class maps to one handling policy in the session loop:

* ``TransportError``       socket read/write failed; the peer is pruned.
* ``AuthRejected``         the authority said no; the client gets an
                           ``error`` frame and the connection stays open.
* ``AuthTransportFailure`` the authority could not be reached or answered
                           garbage; logged, the session stays unauthenticated.
* ``StorageError``         the message store failed; logged, backlog degrades
                           to empty.
* ``ProtocolError``        an inbound frame could not be decoded; logged and
                           ignored.
"""


class ChatError(Exception):
    pass


class TransportError(ChatError):
    pass


class AuthError(ChatError):
    pass


class AuthRejected(AuthError):
    def __init__(self, detail: str = "Invalid token", status_code: int | None = None):
        super().__init__(detail)
        self.detail = detail
        self.status_code = status_code


class AuthTransportFailure(AuthError):
    pass


class StorageError(ChatError):
    pass


class ProtocolError(ChatError):
    pass
