"""Error taxonomy shared by the deposit and withdrawal paths.

Every error carries a stable ``code`` and the HTTP status the API layer
answers with, so callers get a specific classification rather than a
generic failure.
"""


class CustodyError(Exception):
    code = "custody_error"
    status_code = 500

    def __init__(self, message: str = ""):
        super().__init__(message or self.code)
        self.message = message or self.code


class ValidationError(CustodyError):
    code = "validation_error"
    status_code = 400


class InvalidAddress(ValidationError):
    code = "invalid_address"


class InvalidKeyFormat(ValidationError):
    code = "invalid_key_format"


class UnsupportedChain(ValidationError):
    code = "unsupported_chain"


class InsufficientFunds(CustodyError):
    code = "insufficient_funds"
    status_code = 400


class InvalidState(CustodyError):
    code = "invalid_state"
    status_code = 409


class AllocationConflict(CustodyError):
    code = "allocation_conflict"
    status_code = 409


class UpstreamUnavailable(CustodyError):
    code = "upstream_unavailable"
    status_code = 503


class ReorgDetected(CustodyError):
    code = "reorg_detected"
    status_code = 409


class NotFound(CustodyError):
    code = "not_found"
    status_code = 404


class PermissionDenied(CustodyError):
    code = "permission_denied"
    status_code = 403
