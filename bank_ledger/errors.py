"""
Ledger Error Module

Error kinds raised by the ledger core. Each error keeps its kind intact so the
boundary layer can translate it into a transport-specific response.
"""

from typing import Any, Dict, Optional


class LedgerError(Exception):
    """Base class for all ledger core errors"""
    kind = "LedgerError"
    status_code = 500

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        return f"{self.kind} [{self.status_code}] >> {self.message}"

    def to_dict(self) -> Dict[str, Any]:
        """Serializable form for the boundary layer"""
        result = {"kind": self.kind, "message": self.message}
        if self.details:
            result["details"] = self.details
        return result


class InvalidAmount(LedgerError, ValueError):
    """Amount is non-positive, negative where forbidden, or malformed"""
    kind = "InvalidAmount"
    status_code = 400


class InvalidOperation(LedgerError, ValueError):
    """Request is well-formed but cannot be executed as asked"""
    kind = "InvalidOperation"
    status_code = 400


class NotFound(LedgerError):
    """Resource is missing or not accessible to the caller"""
    kind = "NotFound"
    status_code = 404


class Forbidden(LedgerError):
    """Resource is visible to the caller but the operation is not permitted"""
    kind = "Forbidden"
    status_code = 403


class InsufficientFunds(LedgerError):
    """Debit would drive the balance below zero at commit time"""
    kind = "InsufficientFunds"
    status_code = 422


class Conflict(LedgerError):
    """Operation conflicts with current state"""
    kind = "Conflict"
    status_code = 409


class Busy(Conflict):
    """Storage contention persisted past the retry policy"""
    kind = "Busy"
