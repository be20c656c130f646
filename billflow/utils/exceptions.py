"""
Custom Exceptions Module.

Every error the engine raises on purpose is a subclass of BillFlowError.
Each class carries a stable ``code`` that is surfaced to reviewers and
stored in audit/retry records, so callers can branch on the code without
importing the class.

Exception Hierarchy:
    BillFlowError (base)
    ├── DocumentError
    │   ├── UnsupportedFormatError
    │   ├── CorruptDocumentError
    │   ├── EmptyDocumentError
    │   ├── DocumentNotFoundError
    │   ├── PageNotFoundError
    │   └── ZoneNotFoundError
    ├── OcrError
    │   ├── OcrBackendUnavailableError   (retryable)
    │   └── OcrTimeoutError
    ├── ExtractionError
    │   ├── AmbiguousCandidateError
    │   ├── CandidateNotFoundError
    │   ├── InvalidFieldValueError
    │   └── UnknownFieldError
    ├── MatchingError
    │   └── ProductNotFoundError
    ├── BillError
    │   ├── BillNotFoundError
    │   ├── LineItemNotFoundError
    │   ├── DuplicateInvoiceError
    │   ├── ValidationBlockedError
    │   ├── InvalidTransitionError
    │   ├── StaleBillVersionError
    │   ├── NothingToUndoError
    │   └── ReviewModeError
    ├── StorageError
    └── ConfigurationError
"""

from typing import Iterable, List, Optional


class BillFlowError(Exception):
    """
    Base exception for all engine errors.

    Attributes:
        message: Human-readable error message.
        details: Dictionary with additional error context.
        code: Stable error code.
        retryable: Whether the operation may succeed if simply retried.
    """

    code = "BillFlowError"
    retryable = False

    def __init__(self, message: str, details: dict = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message

    def to_dict(self) -> dict:
        """Serializable form used in audit and retry records."""
        return {"code": self.code, "message": self.message, "details": self.details}


# =============================================================================
# DOCUMENT ERRORS
# =============================================================================

class DocumentError(BillFlowError):
    """Base exception for document intake and normalization errors."""
    code = "DocumentError"


class UnsupportedFormatError(DocumentError):
    """
    Raised when the declared MIME type is not PDF/PNG/JPEG/TIFF.

    Example:
        >>> raise UnsupportedFormatError("application/msword", ["application/pdf"])
    """

    code = "UnsupportedFormat"

    def __init__(self, mime_type: str, supported_types: Iterable[str]):
        message = f"Unsupported document format: '{mime_type}'"
        details = {"mime_type": mime_type, "supported_types": list(supported_types)}
        super().__init__(message, details)


class CorruptDocumentError(DocumentError):
    """Raised when parsing fails mid-stream."""

    code = "CorruptDocument"

    def __init__(self, document_id: str, reason: str = None):
        message = f"Corrupt or unreadable document: {document_id}"
        details = {"document_id": document_id, "reason": reason}
        super().__init__(message, details)


class EmptyDocumentError(DocumentError):
    """Raised when a document resolves to zero pages."""

    code = "EmptyDocument"

    def __init__(self, document_id: str):
        message = f"Document has no pages: {document_id}"
        super().__init__(message, {"document_id": document_id})


class DocumentNotFoundError(DocumentError):
    code = "DocumentNotFound"

    def __init__(self, document_id: str):
        super().__init__(f"Document not found: {document_id}", {"document_id": document_id})


class PageNotFoundError(DocumentError):
    code = "PageNotFound"

    def __init__(self, document_id: str, page_index: int):
        super().__init__(f"Document {document_id} has no page {page_index}",
                         {"document_id": document_id, "page_index": page_index})


class ZoneNotFoundError(DocumentError):
    code = "ZoneNotFound"

    def __init__(self, zone_id: str):
        super().__init__(f"Zone not found or not active: {zone_id}", {"zone_id": zone_id})


# =============================================================================
# OCR ERRORS
# =============================================================================

class OcrError(BillFlowError):
    """Base exception for OCR errors."""
    code = "OcrError"


class OcrBackendUnavailableError(OcrError):
    """Raised when the OCR backend cannot be reached or is not installed."""

    code = "OcrBackendUnavailable"
    retryable = True

    def __init__(self, backend: str, reason: str = None):
        message = f"OCR backend not available: {backend}"
        details = {"backend": backend, "reason": reason}
        super().__init__(message, details)


class OcrTimeoutError(OcrError):
    """Raised when a targeted re-OCR exceeds its time budget. Non-fatal."""

    code = "OcrTimeout"

    def __init__(self, region: str, timeout: float):
        message = f"OCR timed out after {timeout:.1f}s for region {region}"
        details = {"region": region, "timeout": timeout}
        super().__init__(message, details)


# =============================================================================
# EXTRACTION / MATCHING ERRORS
# =============================================================================

class ExtractionError(BillFlowError):
    """Base exception for candidate generation errors."""
    code = "ExtractionError"


class AmbiguousCandidateError(ExtractionError):
    """Raised when a bill still has fields that need a human decision."""

    code = "AmbiguousCandidate"

    def __init__(self, fields: List[str]):
        message = f"Ambiguous candidates require review: {', '.join(fields)}"
        super().__init__(message, {"fields": list(fields)})


class CandidateNotFoundError(ExtractionError):
    code = "CandidateNotFound"

    def __init__(self, field_name: str, candidate_id: Optional[str]):
        super().__init__(f"No candidate {candidate_id} for field {field_name}",
                         {"field": field_name, "candidate_id": candidate_id})


class InvalidFieldValueError(ExtractionError):
    """Raised when a reviewer edit cannot be parsed as the field's type."""

    code = "InvalidFieldValue"

    def __init__(self, field_name: str, value, field_type: str):
        message = f"Value {value!r} is not a valid {field_type} for {field_name}"
        super().__init__(message, {"field": field_name, "value": str(value), "field_type": field_type})


class UnknownFieldError(ExtractionError):
    code = "UnknownField"

    def __init__(self, field_name: str):
        super().__init__(f"Unknown field: {field_name}", {"field": field_name})


class MatchingError(BillFlowError):
    """Base exception for catalog matching errors."""
    code = "MatchingError"


class ProductNotFoundError(MatchingError):
    """Raised when a referenced catalog product does not exist."""

    code = "ProductNotFound"

    def __init__(self, reference: str):
        super().__init__(f"Product not found: {reference}", {"reference": reference})


# =============================================================================
# BILL ERRORS
# =============================================================================

class BillError(BillFlowError):
    """Base exception for bill lifecycle errors."""
    code = "BillError"


class BillNotFoundError(BillError):
    code = "BillNotFound"

    def __init__(self, bill_id: str):
        super().__init__(f"Bill not found: {bill_id}", {"bill_id": bill_id})


class LineItemNotFoundError(BillError):
    code = "LineItemNotFound"

    def __init__(self, bill_id: str, line_id: str):
        message = f"Line item {line_id} not found on bill {bill_id}"
        super().__init__(message, {"bill_id": bill_id, "line_id": line_id})


class DuplicateInvoiceError(BillError):
    """Raised when (vendor_id, invoice_number) already has a bill."""

    code = "DuplicateInvoice"

    def __init__(self, vendor_id: str, invoice_number: str, existing_bill_id: str = None):
        message = f"Duplicate invoice {invoice_number} for vendor {vendor_id}"
        details = {
            "vendor_id": vendor_id,
            "invoice_number": invoice_number,
            "existing_bill_id": existing_bill_id,
        }
        super().__init__(message, details)


class ValidationBlockedError(BillError):
    """Raised when approve is attempted while hard findings are present."""

    code = "ValidationBlocked"

    def __init__(self, bill_id: str, finding_codes: List[str]):
        message = f"Bill {bill_id} has blocking findings: {', '.join(finding_codes)}"
        super().__init__(message, {"bill_id": bill_id, "findings": list(finding_codes)})


class InvalidTransitionError(BillError):
    """Raised when a state transition is not allowed from the current state."""

    code = "InvalidTransition"

    def __init__(self, bill_id: str, current: str, action: str):
        message = f"Cannot {action} bill {bill_id} in state {current}"
        details = {"bill_id": bill_id, "state": current, "action": action}
        super().__init__(message, details)


class StaleBillVersionError(BillError):
    """Raised when a write is based on an outdated bill version."""

    code = "StaleBillVersion"

    def __init__(self, bill_id: str, expected: int, actual: int):
        message = f"Stale write on bill {bill_id}: expected version {expected}, found {actual}"
        details = {"bill_id": bill_id, "expected": expected, "actual": actual}
        super().__init__(message, details)


class NothingToUndoError(BillError):
    code = "NothingToUndo"

    def __init__(self, bill_id: str):
        super().__init__(f"No undoable action on bill {bill_id}", {"bill_id": bill_id})


class ReviewModeError(BillError):
    """Raised when an action needs Power mode but the case is in Guided mode."""

    code = "ReviewMode"

    def __init__(self, action: str, mode: str):
        message = f"Action {action} is not available in {mode} mode"
        super().__init__(message, {"action": action, "mode": mode})


# =============================================================================
# INFRASTRUCTURE ERRORS
# =============================================================================

class StorageError(BillFlowError):
    """Raised when a repository operation fails."""

    code = "StorageError"

    def __init__(self, operation: str, reason: Optional[str] = None):
        message = f"Storage operation failed: {operation}"
        super().__init__(message, {"operation": operation, "reason": reason})


class ConfigurationError(BillFlowError):
    code = "ConfigurationError"

    def __init__(self, key: str, reason: str):
        super().__init__(f"Invalid configuration for '{key}': {reason}", {"key": key})


__all__ = [
    'BillFlowError',
    'DocumentError',
    'UnsupportedFormatError',
    'CorruptDocumentError',
    'EmptyDocumentError',
    'DocumentNotFoundError',
    'PageNotFoundError',
    'ZoneNotFoundError',
    'OcrError',
    'OcrBackendUnavailableError',
    'OcrTimeoutError',
    'ExtractionError',
    'AmbiguousCandidateError',
    'CandidateNotFoundError',
    'InvalidFieldValueError',
    'UnknownFieldError',
    'MatchingError',
    'ProductNotFoundError',
    'BillError',
    'BillNotFoundError',
    'LineItemNotFoundError',
    'DuplicateInvoiceError',
    'ValidationBlockedError',
    'InvalidTransitionError',
    'StaleBillVersionError',
    'NothingToUndoError',
    'ReviewModeError',
    'StorageError',
    'ConfigurationError',
]
