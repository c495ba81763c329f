# deptxfer/server/errors.py
# Error kinds raised by the authentication and file-receive protocols.


class TransferServerError(Exception):
    """
    Base class for terminal protocol errors on one connection.

    `reason` is safe to send to the peer. The connection handler wraps it in
    the phase-specific reply ("Authentication failed: ..." or "Error: ...").
    """

    def __init__(self, reason):
        super().__init__(reason)
        self.reason = reason


#### Authentication ####
class AuthError(TransferServerError):
    """Authentication rejected; no session is created."""


class UnknownUserError(AuthError):
    def __init__(self, username):
        super().__init__("User not found")
        self.username = username


class NoDepartmentError(AuthError):
    def __init__(self, username):
        super().__init__("User not in required groups")
        self.username = username


class BadCredentialError(AuthError):
    def __init__(self, username):
        super().__init__("Invalid credentials")
        self.username = username


#### File receive ####
class AuthorizationError(TransferServerError):
    """Requested department differs from the session's department."""

    def __init__(self, requested):
        super().__init__(f"You don't have access to the {requested} department")
        self.requested = requested


class InvalidDepartmentError(TransferServerError):
    def __init__(self, selector):
        super().__init__("Invalid department")
        self.selector = selector


class InvalidFileNameError(TransferServerError):
    def __init__(self, declared_path):
        super().__init__("Invalid file name")
        self.declared_path = declared_path


class StorageError(TransferServerError):
    """Destination file or attribution record could not be created or written."""


class TransferError(TransferServerError):
    """Payload ended before the declared length was received."""

    def __init__(self, received, expected):
        super().__init__("Transfer interrupted")
        self.received = received
        self.expected = expected
