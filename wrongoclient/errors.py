class WrongoClientError(Exception):
    """Base error for the project."""


class NilDocumentError(WrongoClientError):
    """Raised when None is passed where a document is required."""

    def __init__(self, message: str = "document is nil") -> None:
        super().__init__(message)


class MarshalError(WrongoClientError):
    """Raised when a value cannot be encoded into a BSON document."""

    def __init__(self, value: object, error: Exception) -> None:
        self.value = value
        self.error = error
        super().__init__(
            f"cannot marshal type {type(value).__name__} to a BSON Document: {error}"
        )


class DecodeError(WrongoClientError):
    """Raised when a single BSON value cannot be decoded."""


class TypeMismatchError(WrongoClientError):
    """Raised when a self-encoding value reports a BSON type that does not fit."""


class PipelineError(WrongoClientError):
    """Base for aggregation pipeline shape errors."""


class InvalidPipelineShapeError(PipelineError):
    """Raised when a non-empty single document is passed as a pipeline."""


class UnsupportedPipelineTypeError(PipelineError):
    """Raised when a pipeline is neither an array, a sequence, nor self-encoding."""


class DocumentValidationError(WrongoClientError):
    """Raised when input documents fail basic validation."""


class EmptyDocumentError(DocumentValidationError):
    """Raised when an update document has no elements."""


class MissingOperatorPrefixError(DocumentValidationError):
    """Raised when an update document does not start with a '$' key."""


class OperatorPrefixNotAllowedError(DocumentValidationError):
    """Raised when a replacement document starts with a '$' key."""


class MalformedDocumentError(WrongoClientError):
    """Raised for BSON bytes that do not form a valid document."""


class MalformedArrayError(MalformedDocumentError):
    """Raised when a pre-encoded array fails structural validation."""


class ElementNotFoundError(WrongoClientError, KeyError):
    """Raised when a key lookup finds no element."""
