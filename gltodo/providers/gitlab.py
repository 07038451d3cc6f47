"""GitLab REST API v4 to-do provider."""

import logging
import threading
import time
from collections.abc import Callable
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime

import httpx
from pydantic import ValidationError
from tenacity import RetryCallState, Retrying, retry_if_exception, stop_after_attempt, wait_random_exponential

from gltodo.errors import ApiError, ApiMalformed, ApiRateLimited, ApiUnauthorized, ApiUnavailable, SyncCancelled
from gltodo.models import Account, Credential, FetchResult, RateLimit, SyncCursor, TodoItem
from gltodo.providers.base import TodoProvider
from gltodo.settings import GlTodoSettings

logger = logging.getLogger(__name__)

API_PATH = "/api/v4"


def _int_header(response: httpx.Response, name: str) -> int | None:
    raw = response.headers.get(name)
    if raw is None:
        return None
    try:
        return int(raw)
    except ValueError:
        return None


def _retry_after(response: httpx.Response) -> float:
    """Seconds to wait after a 429, from Retry-After (seconds or HTTP date) or RateLimit-Reset."""
    raw = response.headers.get("Retry-After")
    if raw:
        try:
            return max(float(raw), 0.0)
        except ValueError:
            try:
                return max((parsedate_to_datetime(raw) - datetime.now(timezone.utc)).total_seconds(), 0.0)
            except (TypeError, ValueError):
                pass
    reset = _int_header(response, "RateLimit-Reset")
    if reset is not None:
        return max(reset - time.time(), 0.0)
    return 1.0


def _next_page(response: httpx.Response) -> int | None:
    """Next page number from X-Next-Page, falling back to the Link header."""
    if "X-Next-Page" in response.headers:
        raw = response.headers["X-Next-Page"].strip()
        if not raw:
            return None  # present but empty on the last page
        try:
            return int(raw)
        except ValueError as exc:
            raise ApiMalformed(f"Unexpected X-Next-Page header: {raw!r}") from exc
    link = response.links.get("next")
    if not link:
        return None
    page = httpx.URL(link["url"]).params.get("page")
    return int(page) if page and page.isdigit() else None


class GitLabProvider(TodoProvider):
    def __init__(
        self,
        account: Account,
        credential: Credential,
        settings: GlTodoSettings,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._account = account
        self._per_page = settings.per_page
        self._page_budget = settings.page_budget
        self._attempts = max(settings.retry_attempts, 1)
        self._retry_base = settings.retry_base
        self._retry_cap = settings.retry_cap
        self._max_rate_limit_wait = settings.max_rate_limit_wait
        self._sleep = sleep
        self.rate_limit = RateLimit()
        self._client = httpx.Client(
            base_url=f"{account.gitlab_url}{API_PATH}",
            headers={
                "Authorization": f"Bearer {credential.token.get_secret_value()}",
                "Accept": "application/json",
            },
            timeout=settings.timeout,
        )

    def close(self) -> None:
        self._client.close()

    # -----------------------------------------------------------------------
    # Transport
    # -----------------------------------------------------------------------

    def _retrying(self) -> Retrying:
        jitter = wait_random_exponential(multiplier=self._retry_base, max=self._retry_cap)

        def wait(retry_state: RetryCallState) -> float:
            exc = retry_state.outcome.exception() if retry_state.outcome else None
            if isinstance(exc, ApiRateLimited):
                return max(exc.retry_after, jitter(retry_state))
            return jitter(retry_state)

        return Retrying(
            stop=stop_after_attempt(self._attempts),
            wait=wait,
            retry=retry_if_exception(self._retryable),
            before_sleep=self._log_retry,
            sleep=self._sleep,
            reraise=True,
        )

    def _retryable(self, exc: BaseException) -> bool:
        if isinstance(exc, ApiRateLimited):
            # Never retry sooner than Retry-After allows
            return exc.retry_after <= self._max_rate_limit_wait
        return isinstance(exc, ApiUnavailable)

    @staticmethod
    def _log_retry(retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
        logger.warning(
            "GitLab request failed (%s), attempt %d, retrying in %.1fs", exc, retry_state.attempt_number, delay
        )

    def _respect_rate_limit(self) -> None:
        """Block until the advertised budget resets, or refuse if that is too far off."""
        remaining, reset_at = self.rate_limit.remaining, self.rate_limit.reset_at
        if remaining is None or remaining > 0 or reset_at is None:
            return
        wait = (reset_at - datetime.now(timezone.utc)).total_seconds()
        if wait <= 0:
            return
        if wait > self._max_rate_limit_wait:
            raise ApiRateLimited(f"GitLab rate limit exhausted, resets in {wait:.0f}s", retry_after=wait)
        logger.warning("GitLab rate limit exhausted, waiting %.1fs for reset", wait)
        self._sleep(wait)

    def _track_rate_limit(self, response: httpx.Response) -> None:
        remaining = _int_header(response, "RateLimit-Remaining")
        if remaining is None:
            return
        reset = _int_header(response, "RateLimit-Reset")
        self.rate_limit = RateLimit(
            limit=_int_header(response, "RateLimit-Limit"),
            remaining=remaining,
            reset_at=datetime.fromtimestamp(reset, tz=timezone.utc) if reset is not None else None,
        )

    def _send(self, method: str, path: str, params: dict | None) -> httpx.Response:
        try:
            response = self._client.request(method, path, params=params)
        except httpx.TransportError as exc:
            # TimeoutException is a TransportError
            raise ApiUnavailable(f"GitLab request {method} {path} failed: {exc}") from exc
        self._track_rate_limit(response)
        if response.status_code == 401:
            raise ApiUnauthorized(
                "GitLab API returned 401. Run gltodo login to update the token for this account."
            )
        if response.status_code == 429:
            raise ApiRateLimited("GitLab API returned 429", retry_after=_retry_after(response))
        if response.status_code >= 500:
            raise ApiUnavailable(f"GitLab API returned {response.status_code}", status_code=response.status_code)
        return response

    def _request(self, method: str, path: str, params: dict | None = None) -> httpx.Response:
        self._respect_rate_limit()
        return self._retrying()(self._send, method, path, params)

    @staticmethod
    def _json(response: httpx.Response) -> dict | list:
        try:
            return response.json()
        except ValueError as exc:
            raise ApiMalformed(f"GitLab returned a non-JSON body ({response.status_code})") from exc

    # -----------------------------------------------------------------------
    # Endpoints
    # -----------------------------------------------------------------------

    def _parse_todos(self, response: httpx.Response) -> list[TodoItem]:
        payload = self._json(response)
        if not isinstance(payload, list):
            raise ApiMalformed(f"Expected a list of to-dos, got {type(payload).__name__}")
        try:
            return [TodoItem.from_api(node) for node in payload]
        except (AttributeError, KeyError, TypeError, ValueError, ValidationError) as exc:
            raise ApiMalformed(f"Malformed to-do in GitLab response: {exc}") from exc

    def fetch_todos(
        self,
        cursor: SyncCursor,
        page_budget: int | None = None,
        cancel: threading.Event | None = None,
    ) -> FetchResult:
        budget = page_budget or self._page_budget
        next_page: int | None = cursor.next_page or 1
        items: list[TodoItem] = []
        pages = 0
        while next_page is not None and pages < budget:
            if cancel is not None and cancel.is_set():
                raise SyncCancelled("Fetch cancelled")
            response = self._request(
                "GET",
                "/todos",
                params={"state": "pending", "per_page": str(self._per_page), "page": str(next_page)},
            )
            if response.status_code >= 400:
                raise ApiError(f"GitLab API returned {response.status_code}", status_code=response.status_code)
            items.extend(self._parse_todos(response))
            pages += 1
            next_page = _next_page(response)
            logger.debug("Fetched to-do page %d for %s (%d items so far)", pages, self._account.key, len(items))
        return FetchResult(
            items=items,
            next_cursor=cursor.model_copy(update={"next_page": next_page}),
            rate_limit_remaining=self.rate_limit.remaining,
            complete=next_page is None,
            pages=pages,
        )

    def mark_done(self, item_id: str) -> None:
        response = self._request("POST", f"/todos/{item_id}/mark_as_done")
        if response.status_code == 404:
            # Already resolved or gone: GitLab already matches what we want
            logger.debug("To-do %s not found on mark_as_done, treating as done", item_id)
            return
        if response.status_code >= 400:
            raise ApiError(
                f"GitLab API returned {response.status_code} marking to-do {item_id} done",
                status_code=response.status_code,
            )

    def current_user(self) -> dict:
        response = self._request("GET", "/user")
        if response.status_code >= 400:
            raise ApiError(f"GitLab API returned {response.status_code}", status_code=response.status_code)
        payload = self._json(response)
        if not isinstance(payload, dict):
            raise ApiMalformed("Expected a user object from /user")
        return payload
