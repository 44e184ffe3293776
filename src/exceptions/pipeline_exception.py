class PipelineException(Exception):
    """
    This is the base exception for all intake pipeline exceptions
    """
    def __init__(self, message: str, status_code: int):
        self.message = message
        self.status_code = status_code
        super().__init__(self.message, self.status_code)

    def __str__(self) -> str:
        return self.message

class ValidationException(PipelineException):
    """
    Raised when a webhook payload does not match the expected envelope.
    Rejected at ingress, never retried.
    """
    def __init__(self, message: str):
        super().__init__(message=message, status_code=400)

class AuthException(PipelineException):
    """
    Raised on an invalid webhook signature or worker secret.
    Rejected at ingress, never retried.
    """
    def __init__(self, message: str):
        super().__init__(message=message, status_code=401)

class ExtractionException(PipelineException):
    """
    Raised when the extraction model call fails or returns unparsable output.
    Retryable at the message level.
    """
    def __init__(self, message: str):
        super().__init__(message=message, status_code=502)

class StoreException(PipelineException):
    """
    This is the exception for all database I/O failures
    """
    def __init__(self, message: str, status_code: int = 500):
        super().__init__(message=message, status_code=status_code)
