"""Reconciliation Engine: fetch, merge, replay pending mutations, commit."""

import logging
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone

from filelock import FileLock, Timeout
from pydantic import SecretStr

from gltodo.cache import CacheStore
from gltodo.credentials import CredentialStore
from gltodo.errors import (
    ApiError,
    ApiUnauthorized,
    CredentialRejected,
    MutationExhausted,
    SyncCancelled,
    SyncInProgress,
    UnknownTodo,
)
from gltodo.models import (
    Account,
    Credential,
    ItemStatus,
    LocalMutation,
    MutationKind,
    SyncCursor,
    SyncReport,
    TodoItem,
    TodoState,
    TodoView,
)
from gltodo.providers.base import TodoProvider
from gltodo.providers.gitlab import GitLabProvider
from gltodo.query import TodoFilter, select
from gltodo.settings import GlTodoSettings

logger = logging.getLogger(__name__)

ProviderFactory = Callable[[Account, Credential, GlTodoSettings], TodoProvider]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class _Pass:
    """Working set for one reconciliation pass. Nothing here is durable until commit."""

    def __init__(
        self, items: list[TodoItem], mutations: list[LocalMutation], confirmed: dict[str, datetime]
    ) -> None:
        self.items = {item.id: item for item in items}
        self.confirmed = dict(confirmed)
        self.queued_done = {m.item_id: m for m in mutations if m.kind is MutationKind.DONE}
        self.queued_snooze = [m for m in mutations if m.kind is MutationKind.SNOOZE]
        self.resolved: set[tuple[str, MutationKind]] = set()
        self.retried: list[LocalMutation] = []
        self.report = SyncReport()

    def resolve(self, item_id: str, kind: MutationKind = MutationKind.DONE) -> None:
        self.resolved.add((item_id, kind))
        if kind is MutationKind.DONE:
            self.queued_done.pop(item_id, None)


class SyncEngine:
    """Keeps the local cache of one or more accounts in line with GitLab.

    Every call takes an explicit Account; the engine keeps no notion of a
    current account. At most one pass per account runs at a time; mutations
    issued meanwhile are queued on disk and picked up by the next pass.
    """

    def __init__(
        self,
        settings: GlTodoSettings,
        store: CacheStore,
        credentials: CredentialStore,
        provider_factory: ProviderFactory = GitLabProvider,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._settings = settings
        self._store = store
        self._credentials = credentials
        self._provider_factory = provider_factory
        self._clock = clock
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    # -----------------------------------------------------------------------
    # Plumbing
    # -----------------------------------------------------------------------

    def _lock_for(self, account: Account) -> threading.Lock:
        with self._locks_guard:
            return self._locks.setdefault(account.key, threading.Lock())

    @contextmanager
    def _pass_lock(self, account: Account) -> Iterator[bool]:
        """Try to own the account: the thread lock, then a file lock shared with other gltodo processes.

        Yields False without waiting when either is held elsewhere.
        """
        lock = self._lock_for(account)
        if not lock.acquire(blocking=False):
            yield False
            return
        file_lock = FileLock(self._store.lock_path_for(account))
        try:
            file_lock.acquire(timeout=0)
        except Timeout:
            lock.release()
            yield False
            return
        try:
            yield True
        finally:
            file_lock.release()
            lock.release()

    def _provider(self, account: Account) -> TodoProvider:
        credential = self._credentials.require(account)
        return self._provider_factory(account, credential, self._settings)

    @contextmanager
    def _auth_guard(self, account: Account) -> Iterator[None]:
        """Turn a 401 into CredentialRejected, clearing the stored token first."""
        try:
            yield
        except ApiUnauthorized as exc:
            self._credentials.clear(account)
            raise CredentialRejected(
                f"GitLab rejected the token for {account.key}. It has been cleared; run: gltodo login"
            ) from exc

    # -----------------------------------------------------------------------
    # Reconciliation pass
    # -----------------------------------------------------------------------

    def sync(
        self,
        account: Account,
        page_budget: int | None = None,
        cancel: threading.Event | None = None,
    ) -> SyncReport:
        with self._pass_lock(account) as owned:
            if not owned:
                raise SyncInProgress(f"A sync for {account.key} is already running")
            return self._sync(account, page_budget, cancel)

    def _sync(self, account: Account, page_budget: int | None, cancel: threading.Event | None) -> SyncReport:
        snapshot = self._store.load_or_reset(account)
        now = self._clock()
        state = _Pass(snapshot.items, snapshot.pending_mutations, snapshot.confirmed_done)
        self._apply_snoozes(state)

        started_from_top = snapshot.cursor.next_page is None
        with self._auth_guard(account), self._provider(account) as provider:
            result = provider.fetch_todos(snapshot.cursor, page_budget=page_budget, cancel=cancel)
            state.report.pages = result.pages
            state.report.complete = result.complete

            seen: set[str] = set()
            for remote in result.items:
                seen.add(remote.id)
                self._merge(state, remote)
            if started_from_top and result.complete:
                self._resolve_missing(state, seen, now)

            self._replay(state, provider, now, cancel)

        if cancel is not None and cancel.is_set():
            raise SyncCancelled(f"Sync for {account.key} cancelled before commit")

        self._prune(state, now)
        cursor = result.next_cursor.model_copy(
            update={
                "last_synced_at": now,
                "last_complete_at": now if result.complete else snapshot.cursor.last_complete_at,
            }
        )
        items = sorted(state.items.values(), key=lambda item: item.updated_at, reverse=True)
        self._store.commit(
            account, items, cursor, resolved=state.resolved, retried=state.retried, confirmed=state.confirmed
        )

        report = state.report
        logger.info(
            "Synced %s: %d added, %d updated, %d resolved remotely, %d confirmed, %d pruned (%d pages%s)",
            account.key,
            report.added,
            report.updated,
            report.removed,
            report.confirmed,
            report.pruned,
            report.pages,
            "" if report.complete else ", more to fetch",
        )
        return report

    def _apply_snoozes(self, state: _Pass) -> None:
        for mutation in state.queued_snooze:
            item = state.items.get(mutation.item_id)
            if item is not None:
                state.items[item.id] = item.model_copy(update={"snoozed_until": mutation.snooze_until})
            state.resolve(mutation.item_id, MutationKind.SNOOZE)

    def _merge(self, state: _Pass, remote: TodoItem) -> None:
        local = state.items.get(remote.id)
        if local is None:
            confirmed_at = state.confirmed.get(remote.id)
            if confirmed_at is not None:
                if remote.updated_at <= confirmed_at:
                    # Listed before GitLab applied our mark-done
                    return
                del state.confirmed[remote.id]
            state.items[remote.id] = remote
            state.report.added += 1
            return
        if remote.updated_at <= local.updated_at:
            # Local may hold a done that GitLab has not seen yet
            return
        if local.state is TodoState.DONE and remote.state is TodoState.PENDING:
            if local.completed_at is not None and remote.updated_at <= local.completed_at:
                return
            # Same ID re-issued after we completed it: a fresh pending to-do
            if remote.id in state.queued_done:
                logger.info("To-do %s was re-issued on GitLab; dropping the queued mark-done", remote.id)
                state.resolve(remote.id)
        state.items[remote.id] = remote.model_copy(update={"snoozed_until": local.snoozed_until})
        state.report.updated += 1

    def _resolve_missing(self, state: _Pass, seen: set[str], now: datetime) -> None:
        """After a full walk of the pending feed, anything absent is done on GitLab."""
        for item_id, item in list(state.items.items()):
            if item_id in seen:
                continue
            if item.state is TodoState.PENDING:
                state.items[item_id] = item.model_copy(update={"state": TodoState.DONE, "completed_at": now})
                state.report.removed += 1
        for item_id in list(state.queued_done):
            if item_id in seen:
                continue
            item = state.items.get(item_id)
            if item is None:
                state.confirmed[item_id] = now
            elif item.state is not TodoState.DONE:
                state.items[item_id] = item.model_copy(update={"state": TodoState.DONE, "completed_at": now})
            state.resolve(item_id)
            state.report.confirmed += 1

    def _replay(self, state: _Pass, provider: TodoProvider, now: datetime, cancel: threading.Event | None) -> None:
        limit = self._settings.mutation_attempt_limit
        for item_id, mutation in list(state.queued_done.items()):
            if cancel is not None and cancel.is_set():
                return
            try:
                provider.mark_done(item_id)
            except ApiUnauthorized:
                raise
            except ApiError as exc:
                attempts = mutation.attempts + 1
                if attempts >= limit:
                    self._abandon(state, mutation, attempts, str(exc))
                else:
                    logger.warning("Mark-done for to-do %s failed (attempt %d/%d): %s", item_id, attempts, limit, exc)
                    state.retried.append(mutation.model_copy(update={"attempts": attempts, "last_error": str(exc)}))
                continue
            item = state.items.get(item_id)
            if item is None:
                state.confirmed[item_id] = now
            else:
                state.items[item_id] = item.model_copy(
                    update={"state": TodoState.DONE, "completed_at": item.completed_at or now}
                )
            state.resolve(item_id)
            state.report.confirmed += 1

    def _abandon(self, state: _Pass, mutation: LocalMutation, attempts: int, error: str) -> None:
        exhausted = MutationExhausted(mutation.item_id, attempts, error)
        logger.warning("%s", exhausted)
        state.resolve(mutation.item_id)
        state.report.exhausted.append(mutation.item_id)
        state.report.warnings.append(str(exhausted))
        item = state.items.get(mutation.item_id)
        if item is not None and item.state is TodoState.DONE:
            # GitLab never confirmed it: show the to-do as pending again
            state.items[item.id] = item.model_copy(update={"state": TodoState.PENDING, "completed_at": None})

    def _prune(self, state: _Pass, now: datetime) -> None:
        cutoff = now - timedelta(days=self._settings.done_retention_days)
        for item_id, item in list(state.items.items()):
            if item.state is not TodoState.DONE or item_id in state.queued_done:
                continue
            if item.completed_at is not None and item.completed_at < cutoff:
                del state.items[item_id]
                state.report.pruned += 1
        state.confirmed = {item_id: at for item_id, at in state.confirmed.items() if at >= cutoff}

    # -----------------------------------------------------------------------
    # User mutations
    # -----------------------------------------------------------------------

    def mark_done(self, account: Account, item_id: str, push: bool = True) -> ItemStatus:
        """Mark a to-do done locally right away and tell GitLab.

        Idempotent: an item that is already done, already queued, or already
        confirmed by GitLab is left alone and GitLab is not called again. With
        ``push`` the remote call is attempted immediately; a transient failure
        leaves it queued for the next sync.
        """
        now = self._clock()
        mutation = LocalMutation(item_id=item_id, kind=MutationKind.DONE, issued_at=now)
        with self._pass_lock(account) as owned:
            if not owned:
                self._store.apply_mutation(account, mutation)
                logger.info("Sync in progress for %s; queued to-do %s for the next pass", account.key, item_id)
                return ItemStatus.DONE_UNCONFIRMED

            snapshot = self._store.load_or_reset(account)
            if any(m.item_id == item_id and m.kind is MutationKind.DONE for m in snapshot.pending_mutations):
                return ItemStatus.DONE_UNCONFIRMED
            items = {item.id: item for item in snapshot.items}
            item = items.get(item_id)
            if item is not None and item.state is TodoState.DONE:
                return ItemStatus.DONE
            if item is None and item_id in snapshot.confirmed_done:
                return ItemStatus.DONE

            self._store.apply_mutation(account, mutation)
            if item is not None:
                items[item_id] = item.model_copy(
                    update={"state": TodoState.DONE, "completed_at": now, "updated_at": max(item.updated_at, now)}
                )
                self._store.commit(account, items.values(), snapshot.cursor)
            else:
                logger.info("To-do %s is not cached yet; queued for the next sync", item_id)

            if not push:
                return ItemStatus.DONE_UNCONFIRMED
            return self._push(account, mutation, cached=item is not None)

    def _push(self, account: Account, mutation: LocalMutation, cached: bool) -> ItemStatus:
        try:
            with self._auth_guard(account), self._provider(account) as provider:
                provider.mark_done(mutation.item_id)
        except ApiError as exc:
            attempts = mutation.attempts + 1
            logger.warning("Could not reach GitLab for to-do %s, queued for the next sync: %s", mutation.item_id, exc)
            retried = mutation.model_copy(update={"attempts": attempts, "last_error": str(exc)})
            self._store.update_mutation(account, retried)
            return ItemStatus.DONE_UNCONFIRMED
        if not cached:
            self._store.record_confirmed(account, mutation.item_id, mutation.issued_at)
        self._store.resolve_mutation(account, mutation.item_id)
        return ItemStatus.DONE

    def snooze(self, account: Account, item_id: str, until: datetime | None) -> None:
        """Hide a to-do until ``until`` (None unsnoozes). Never touches GitLab."""
        mutation = LocalMutation(item_id=item_id, kind=MutationKind.SNOOZE, issued_at=self._clock(), snooze_until=until)
        with self._pass_lock(account) as owned:
            if not owned:
                self._store.apply_mutation(account, mutation)
                return
            snapshot = self._store.load_or_reset(account)
            items = {item.id: item for item in snapshot.items}
            if item_id not in items:
                raise UnknownTodo(f"To-do {item_id} is not in the local cache. Run: gltodo sync")
            items[item_id] = items[item_id].model_copy(update={"snoozed_until": until})
            self._store.commit(account, items.values(), snapshot.cursor)

    # -----------------------------------------------------------------------
    # Read side and account management
    # -----------------------------------------------------------------------

    def list_todos(self, account: Account, flt: TodoFilter | None = None) -> list[TodoView]:
        snapshot = self._store.load_or_reset(account)
        return select(snapshot.items, snapshot.pending_mutations, flt, now=self._clock())

    def cursor(self, account: Account) -> SyncCursor:
        return self._store.load_or_reset(account).cursor

    def pending_mutations(self, account: Account) -> list[LocalMutation]:
        return self._store.pending_mutations(account)

    def reset_cache(self, account: Account) -> None:
        self._store.reset(account)

    def login(self, account: Account, token: str) -> dict:
        """Verify the token against /user, then store it. Returns the GitLab user."""
        credential = Credential(account=account.key, token=SecretStr(token))
        try:
            with self._provider_factory(account, credential, self._settings) as provider:
                user = provider.current_user()
        except ApiUnauthorized as exc:
            raise CredentialRejected(f"GitLab rejected that token for {account.gitlab_url}") from exc
        self._credentials.store(credential)
        return user

    def logout(self, account: Account) -> None:
        self._credentials.clear(account)
