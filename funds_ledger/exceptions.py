from fastapi import HTTPException

class LedgerError(HTTPException):
    def __init__(self, status_code: int, detail: str):
        super().__init__(status_code=status_code, detail=detail)

class NotFoundError(LedgerError):
    def __init__(self, entity: str = "Entity"):
        super().__init__(status_code=404, detail=f"{entity} not found")

class HoldNotFoundError(NotFoundError):
    def __init__(self):
        super().__init__("Hold")

class InsufficientFundsError(LedgerError):
    def __init__(self, detail: str = "Insufficient funds for transaction"):
        super().__init__(status_code=400, detail=detail)

class InsufficientBalanceError(LedgerError):
    def __init__(self, detail: str = "Insufficient balance for withdrawal"):
        super().__init__(status_code=400, detail=detail)

class InvalidAmountError(LedgerError):
    def __init__(self, detail: str = "Transaction amount must be positive"):
        super().__init__(status_code=400, detail=detail)

class UnsupportedAssetError(LedgerError):
    def __init__(self, asset: str, network: str):
        super().__init__(status_code=400, detail=f"Unsupported asset/network: {asset}/{network}")

class InvalidStateError(LedgerError):
    def __init__(self, detail: str):
        super().__init__(status_code=409, detail=detail)

class DuplicateRequestError(LedgerError):
    def __init__(self, detail: str = "Duplicate request detected (idempotency)"):
        super().__init__(status_code=409, detail=detail)

class VersionConflictError(LedgerError):
    def __init__(self):
        super().__init__(status_code=409, detail="Concurrent balance update, please retry")

class ExternalCollaboratorError(LedgerError):
    def __init__(self, detail: str = "External service unavailable"):
        super().__init__(status_code=503, detail=detail)
