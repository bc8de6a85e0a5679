from typing import Optional


class BuilderError(Exception):
    """Base error surfaced to the API layer.

    `kind` is the stable machine-readable category, `action` tells the front end
    what to offer the user next (open the credential form, or retry).
    """

    kind = 'generic_failure'
    status_code = 502
    action = 'retry'

    def __init__(self, message: str, *, provider: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.provider = provider

    def with_context(self, prefix: str) -> 'BuilderError':
        """Return the same kind of error with `prefix: ` prepended to the message."""
        wrapped = type(self)(f'{prefix}: {self.message}', provider=self.provider)
        wrapped.__cause__ = self
        return wrapped

    def to_dict(self) -> dict:
        body = {'ok': False, 'error': self.message, 'kind': self.kind, 'action': self.action}
        if self.provider:
            body['provider'] = self.provider
        return body


class CredentialMissingError(BuilderError):
    kind = 'credential_missing'
    status_code = 400
    action = 'setup_credentials'


class CredentialInvalidError(BuilderError):
    kind = 'credential_invalid'
    status_code = 401
    action = 'setup_credentials'


class QuotaExceededError(BuilderError):
    kind = 'quota_exceeded'
    status_code = 429


class NameCollisionError(BuilderError):
    kind = 'name_collision'
    status_code = 409


class NetworkError(BuilderError):
    kind = 'network_failure'
    status_code = 502


class MalformedResponseError(BuilderError):
    kind = 'malformed_response'
    status_code = 502


class ValidationFailure(BuilderError):
    kind = 'validation_failure'
    status_code = 400
    action = None


class NotFoundError(BuilderError):
    kind = 'not_found'
    status_code = 404
    action = None
