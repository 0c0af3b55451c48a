"""Domain errors.

Every error carries the HTTP status it maps to; ``server`` installs a single
handler that renders ``{"error": <message>}``.
"""


class StoreError(Exception):
    status_code = 500

    def __init__(self, message: str, code: str | None = None):
        super().__init__(message)
        self.message = message
        self.code = code


class ValidationError(StoreError):
    status_code = 400


class AuthenticationError(StoreError):
    status_code = 401


class AuthorizationError(StoreError):
    status_code = 403


class NotFoundError(StoreError):
    status_code = 404


class ExpiredError(StoreError):
    status_code = 410


class IntegrityError(StoreError):
    """Paid amount does not match the stored order total."""
    status_code = 400


class SignatureError(StoreError):
    status_code = 400


class RateLimitError(StoreError):
    status_code = 429


class DownloadLimitError(StoreError):
    status_code = 429


class UpstreamError(StoreError):
    """A gateway, storage or email provider call failed."""
    status_code = 500
