from typing import Optional


class CredentialError(Exception):
    pass


class RateLimitExceeded(CredentialError):
    def __init__(self, purpose: str, kind: str, retry_after: int) -> None:
        super().__init__(
            f"Rate limit exceeded for {purpose} {kind}; retry after {retry_after}s"
        )
        self.purpose = purpose
        self.kind = kind
        self.retry_after = retry_after


class InvalidOrExpired(CredentialError):
    """What callers may show: the secret is not usable, nothing more."""

    reason = "invalid"

    def __init__(self, message: str = "Invalid or expired code") -> None:
        super().__init__(message)


class CredentialNotFound(InvalidOrExpired):
    reason = "not_found"


class CredentialExpired(InvalidOrExpired):
    reason = "expired"


class AlreadyUsed(CredentialError):
    def __init__(self, message: str = "Credential has already been used") -> None:
        super().__init__(message)


class IncorrectPassword(CredentialError):
    def __init__(self, message: str = "Incorrect password") -> None:
        super().__init__(message)


class PersistenceError(CredentialError):
    pass


class DeliveryError(RuntimeError):
    def __init__(self, message: str, provider: Optional[str] = None) -> None:
        super().__init__(message)
        self.provider = provider
