"""Exception taxonomy shared by the engine, providers and the CLI."""


class GlTodoError(RuntimeError):
    """Base class for every error raised by gltodo."""


class CredentialUnavailable(GlTodoError):
    """No credential is stored for the account, or the backend cannot be used."""


class CredentialRejected(GlTodoError):
    """GitLab rejected the stored token. The credential has been cleared."""


class ApiError(GlTodoError):
    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ApiUnavailable(ApiError):
    """Transport failure, timeout or 5xx after retries were exhausted."""


class ApiRateLimited(ApiError):
    def __init__(self, message: str, retry_after: float) -> None:
        super().__init__(message, status_code=429)
        self.retry_after = retry_after


class ApiUnauthorized(ApiError):
    def __init__(self, message: str = "GitLab API returned 401") -> None:
        super().__init__(message, status_code=401)


class ApiMalformed(ApiError):
    """Response body was not the JSON shape we expect."""


class CacheCorrupt(GlTodoError):
    """The on-disk snapshot could not be read or validated."""


class MutationExhausted(GlTodoError):
    def __init__(self, item_id: str, attempts: int, last_error: str | None = None) -> None:
        detail = f": {last_error}" if last_error else ""
        super().__init__(f"Gave up marking to-do {item_id} done after {attempts} attempts{detail}")
        self.item_id = item_id
        self.attempts = attempts
        self.last_error = last_error


class SyncInProgress(GlTodoError):
    """Another reconciliation pass holds the lock for this account."""


class SyncCancelled(GlTodoError):
    """The caller cancelled an in-flight pass. Nothing was committed."""


class UnknownTodo(GlTodoError):
    """The to-do ID is not in the local cache."""
