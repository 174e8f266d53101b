"""Ledger error hierarchy. ``status_code`` is used by the JSON API error handler."""


class LedgerError(Exception):
    status_code = 400

    def __init__(self, message=None, transaction=None):
        super().__init__(message or self.__class__.__name__)
        self.transaction = transaction

    @property
    def code(self):
        return self.__class__.__name__


class InvalidAmount(LedgerError):
    pass


class InvalidParameter(LedgerError):
    pass


class InsufficientBalance(LedgerError):
    status_code = 409


class InvalidStateTransition(LedgerError):
    status_code = 409


class UserNotFound(LedgerError):
    status_code = 404


class UserInactive(LedgerError):
    status_code = 403


class TransactionNotFound(LedgerError):
    status_code = 404


class PortfolioNotFound(LedgerError):
    status_code = 404


class PortfolioUnavailable(LedgerError):
    pass


class PortfolioLocked(LedgerError):
    status_code = 409


class PortfolioCapReached(LedgerError):
    status_code = 409


class DuplicateAccrual(LedgerError):
    status_code = 409


class DuplicateCommission(LedgerError):
    status_code = 409


class InvalidReferral(LedgerError):
    pass


class PermissionDenied(LedgerError):
    status_code = 403


class TransientStorageFailure(LedgerError):
    status_code = 503
