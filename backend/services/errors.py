"""Failure kinds surfaced by the verification and account services.

Each class carries the HTTP status and a stable machine-readable code; the
application maps them to ``{"detail": ..., "code": ...}`` responses.
"""


class AccountError(Exception):
    status_code: int = 500
    code: str = "account_error"
    default_message: str = "Request failed"

    def __init__(self, message: str | None = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class ExpiredCode(AccountError):
    code = "expired_code"
    default_message = "Verification code has expired"


class MismatchCode(AccountError):
    code = "mismatch_code"
    default_message = "Verification code is incorrect"


class NotFound(AccountError):
    code = "not_found"
    default_message = "User does not exist"


class AlreadyExists(AccountError):
    code = "already_exists"
    default_message = "User already exists"


class BadCredentials(AccountError):
    code = "bad_credentials"
    default_message = "Incorrect password"


class SameAsOld(AccountError):
    status_code = 400
    code = "same_as_old"
    default_message = "New password must differ from the current password"


class Forbidden(AccountError):
    status_code = 403
    code = "forbidden"
    default_message = "User does not exist"


class OperationFailed(AccountError):
    code = "operation_failed"
    default_message = "Operation failed"
