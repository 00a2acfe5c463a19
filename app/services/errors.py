from typing import Optional


class ContractError(ValueError):
    """Malformed chat payload. Not retried."""


class ExternalServiceError(Exception):
    def __init__(self, service: str, message: str, status_code: Optional[int] = None):
        self.service = service
        self.status_code = status_code
        super().__init__(f"{service}: {message}" if status_code is None else f"{service} [{status_code}]: {message}")


class RetryableError(ExternalServiceError):
    """Transient failure: timeout, network error, 429, 5xx or invalid structured output."""


RETRYABLE_STATUS_CODES = frozenset({429, 500, 502, 503, 504})


def is_retryable_status(status_code: int) -> bool:
    return status_code in RETRYABLE_STATUS_CODES
