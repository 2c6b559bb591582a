class LedgerServiceError(Exception):
    status_code = 500
    reason = "error"

    def __init__(self, message: str = ""):
        super().__init__(message or self.reason)
        self.message = message or self.reason


class Unauthenticated(LedgerServiceError):
    status_code = 401
    reason = "unauthorized"


class Forbidden(LedgerServiceError):
    status_code = 403
    reason = "forbidden"


class NotFoundError(LedgerServiceError):
    status_code = 404
    reason = "not_found"


class InvalidStateError(LedgerServiceError):
    status_code = 400
    reason = "invalid_state"


class InvalidInputError(LedgerServiceError):
    status_code = 400
    reason = "invalid_input"


class InsufficientFundsError(LedgerServiceError):
    status_code = 400
    reason = "insufficient_funds"


class AlreadyProcessedError(LedgerServiceError):
    status_code = 400
    reason = "already_processed"


class StorageFailure(LedgerServiceError):
    status_code = 500
    reason = "storage_failure"


class RateLimited(LedgerServiceError):
    status_code = 429
    reason = "rate_limited"
