from fastapi import HTTPException

class BankingError(HTTPException):
    def __init__(self, status_code: int, detail: str):
        super().__init__(status_code=status_code, detail=detail)

class InvalidAmountError(BankingError):
    def __init__(self, detail: str = "Amount must be greater than 0"):
        super().__init__(status_code=400, detail=detail)

class InsufficientBalanceError(BankingError):
    def __init__(self):
        super().__init__(status_code=400, detail="Insufficient balance")

class NotFoundError(BankingError):
    def __init__(self, detail: str = "Not found"):
        super().__init__(status_code=404, detail=detail)

class AccountNotFoundError(NotFoundError):
    def __init__(self, detail: str = "Account not found"):
        super().__init__(detail=detail)

class UserNotFoundError(NotFoundError):
    def __init__(self, detail: str = "User not found"):
        super().__init__(detail=detail)

class LoanNotFoundError(NotFoundError):
    def __init__(self):
        super().__init__(detail="Loan not found")

class TransactionNotFoundError(NotFoundError):
    def __init__(self):
        super().__init__(detail="Transaction not found")

class UnauthorizedError(BankingError):
    def __init__(self, detail: str = "Not authorized to perform this action"):
        super().__init__(status_code=403, detail=detail)

class InvalidTransitionError(BankingError):
    def __init__(self, detail: str):
        super().__init__(status_code=409, detail=detail)

class DuplicatePendingError(BankingError):
    def __init__(self):
        super().__init__(status_code=409, detail="You already have a pending loan application")

class ConflictError(BankingError):
    def __init__(self, detail: str = "Concurrent modification detected, please retry"):
        super().__init__(status_code=409, detail=detail)

class DuplicateEmailError(BankingError):
    def __init__(self):
        super().__init__(status_code=409, detail="Email already registered")

class LedgerImmutableError(RuntimeError):
    """Raised when code tries to modify a completed ledger entry."""
