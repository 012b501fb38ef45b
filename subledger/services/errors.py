"""
Error taxonomy and the result envelope every service operation returns.

Expected conditions (validation failures, unsupported capabilities, provider
failures, missing records) travel as values on ``OperationResult``; exceptions are
kept for programmer errors and for wire failures inside provider adapters.
"""
from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


class ErrorKind(str, enum.Enum):
    VALIDATION = "ValidationError"
    CAPABILITY_UNSUPPORTED = "CapabilityUnsupported"
    PROVIDER = "ProviderError"
    NOT_FOUND = "NotFound"
    LEDGER_WRITE = "LedgerWriteError"
    CONFLICT_OR_STALE = "ConflictOrStale"


class BillingError(Exception):
    kind: ErrorKind = ErrorKind.PROVIDER

    def __init__(self, message: str, *, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ValidationError(BillingError):
    kind = ErrorKind.VALIDATION

    def __init__(self, message: str, *, field_name: Optional[str] = None, details=None):
        super().__init__(message, details=details)
        self.field = field_name


class CapabilityUnsupported(BillingError):
    kind = ErrorKind.CAPABILITY_UNSUPPORTED

    def __init__(self, provider: str, operation: str):
        super().__init__(f"{operation} is not supported by provider {provider}")
        self.provider = provider
        self.operation = operation


class ProviderError(BillingError):
    kind = ErrorKind.PROVIDER

    def __init__(self, message: str, *, provider: Optional[str] = None, code: Optional[str] = None,
                 http_status: Optional[int] = None, details=None):
        super().__init__(message, details=details)
        self.provider = provider
        self.code = code
        self.http_status = http_status


class ProviderAuthError(ProviderError):
    """Credentials or signature rejected; never a business outcome."""


class NotFound(BillingError):
    kind = ErrorKind.NOT_FOUND


class LedgerWriteError(BillingError):
    kind = ErrorKind.LEDGER_WRITE


@dataclass
class OperationResult:
    success: bool
    message: str = ""
    data: Dict[str, Any] = field(default_factory=dict)
    error_kind: Optional[ErrorKind] = None
    error: Optional[BillingError] = None
    # Informational tags (e.g. ConflictOrStale); never turn a success into a failure
    tags: List[ErrorKind] = field(default_factory=list)
    stale: bool = False
    ledger_synced: bool = True

    @classmethod
    def ok(cls, message: str = "", **data) -> "OperationResult":
        return cls(success=True, message=message, data=data)

    @classmethod
    def fail(cls, error: BillingError, **data) -> "OperationResult":
        return cls(success=False, message=error.message, data=data, error_kind=error.kind, error=error)

    def mark_stale(self) -> "OperationResult":
        self.stale = True
        if ErrorKind.CONFLICT_OR_STALE not in self.tags:
            self.tags.append(ErrorKind.CONFLICT_OR_STALE)
        return self

    def mark_ledger_failed(self) -> "OperationResult":
        self.ledger_synced = False
        if ErrorKind.LEDGER_WRITE not in self.tags:
            self.tags.append(ErrorKind.LEDGER_WRITE)
        return self
