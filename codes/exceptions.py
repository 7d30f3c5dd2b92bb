class BulkUploadError(Exception):
    """Base class for errors raised by the bulk code upload pipeline."""


class ReferenceNotFound(BulkUploadError):
    pass


class UnsupportedFormat(BulkUploadError):
    pass


class InvalidStateTransition(BulkUploadError):
    pass


class CodeValidationError(BulkUploadError):
    """A single row could not yield a usable code. The row is dropped."""

    kind = "INVALID_CODE"

    def __init__(self, message: str, value: str = "") -> None:
        super().__init__(message)
        self.value = value


class EmptyOrMissingCode(CodeValidationError):
    kind = "EMPTY_OR_MISSING_CODE"


class InvalidCodeLength(CodeValidationError):
    kind = "INVALID_CODE_LENGTH"
