"""Local Cache Store: one JSON snapshot per account, replaced atomically."""

import json
import logging
import os
import re
import threading
from collections.abc import Iterable, Mapping
from datetime import datetime
from pathlib import Path

from pydantic import ValidationError

from gltodo.errors import CacheCorrupt
from gltodo.models import SCHEMA_VERSION, Account, CacheSnapshot, LocalMutation, MutationKind, SyncCursor, TodoItem

logger = logging.getLogger(__name__)


class CacheStore:
    """Durable mirror of the to-do feed.

    The snapshot record is ``{schema_version, account, cursor, items[],
    pending_mutations[]}``. Every write goes to a sibling ``.tmp`` file which is
    fsynced and then moved over the snapshot with ``os.replace``, so a crash
    leaves either the old or the new snapshot on disk, never a mix.

    Item snapshots (``commit``) and the pending-mutation queue
    (``apply_mutation``/``resolve_mutation``) are written independently: a
    commit keeps whatever queue is on disk at that moment.
    """

    def __init__(self, directory: Path) -> None:
        self._directory = directory
        self._lock = threading.RLock()

    def path_for(self, account: Account) -> Path:
        safe_key = re.sub(r"[^A-Za-z0-9@._-]+", "_", account.key).replace("..", "_")
        return self._directory / f"{safe_key}.json"

    # -----------------------------------------------------------------------
    # Snapshot I/O
    # -----------------------------------------------------------------------

    def load(self, account: Account) -> CacheSnapshot:
        """Return the committed snapshot, or an empty one if none exists yet.

        Raises CacheCorrupt if the file cannot be parsed or validated.
        """
        path = self.path_for(account)
        with self._lock:
            if not path.exists():
                return CacheSnapshot(account=account.key)
            try:
                raw = json.loads(path.read_text(encoding="utf-8"))
            except ValueError as exc:
                raise CacheCorrupt(f"Cache {path} is not valid JSON: {exc}") from exc
        if not isinstance(raw, dict):
            raise CacheCorrupt(f"Cache {path} does not hold a snapshot object")
        if raw.get("schema_version") != SCHEMA_VERSION:
            raise CacheCorrupt(
                f"Cache {path} has schema_version {raw.get('schema_version')!r}, expected {SCHEMA_VERSION}"
            )
        try:
            snapshot = CacheSnapshot.model_validate(raw)
        except ValidationError as exc:
            raise CacheCorrupt(f"Cache {path} failed validation: {exc}") from exc
        if snapshot.account != account.key:
            raise CacheCorrupt(f"Cache {path} belongs to {snapshot.account}, not {account.key}")
        return snapshot

    def load_or_reset(self, account: Account) -> CacheSnapshot:
        """Like load, but a corrupt snapshot is moved aside and replaced by an empty one."""
        with self._lock:
            try:
                return self.load(account)
            except CacheCorrupt as exc:
                path = self.path_for(account)
                aside = path.with_name(path.name + ".corrupt")
                logger.warning("%s. Discarding it (kept as %s) and resyncing from scratch.", exc, aside.name)
                path.replace(aside)
                return CacheSnapshot(account=account.key)

    def _write(self, account: Account, snapshot: CacheSnapshot) -> None:
        path = self.path_for(account)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_name(path.name + ".tmp")
        try:
            with tmp.open("w", encoding="utf-8") as fh:
                fh.write(snapshot.model_dump_json(indent=2))
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp, path)
        except BaseException:
            tmp.unlink(missing_ok=True)
            raise

    def lock_path_for(self, account: Account) -> Path:
        path = self.path_for(account)
        path.parent.mkdir(parents=True, exist_ok=True)
        return path.with_name(path.name + ".lock")

    def _on_disk(self, account: Account) -> CacheSnapshot:
        try:
            return self.load(account)
        except CacheCorrupt:
            return CacheSnapshot(account=account.key)

    def commit(
        self,
        account: Account,
        items: Iterable[TodoItem],
        cursor: SyncCursor,
        resolved: Iterable[tuple[str, MutationKind]] = (),
        retried: Iterable[LocalMutation] = (),
        confirmed: Mapping[str, datetime] | None = None,
    ) -> CacheSnapshot:
        """Atomically replace the item snapshot and cursor.

        ``resolved`` mutations are dropped from the on-disk queue and
        ``retried`` ones replace their queued counterpart, in the same write.
        Mutations queued since the caller loaded its snapshot are kept. The
        confirmed-done ids on disk are kept unless ``confirmed`` replaces them.
        """
        resolved_keys = set(resolved)
        retried_by_key = {(m.item_id, m.kind): m for m in retried}
        with self._lock:
            current = self._on_disk(account)
            queue = []
            for mutation in current.pending_mutations:
                key = (mutation.item_id, mutation.kind)
                if key in resolved_keys:
                    continue
                queue.append(retried_by_key.get(key, mutation))
            snapshot = CacheSnapshot(
                account=account.key,
                cursor=cursor,
                items=list(items),
                pending_mutations=queue,
                confirmed_done=dict(current.confirmed_done if confirmed is None else confirmed),
            )
            self._write(account, snapshot)
        logger.debug("Committed %d items and %d pending mutations for %s", len(snapshot.items), len(queue), account.key)
        return snapshot

    def reset(self, account: Account) -> None:
        with self._lock:
            self.path_for(account).unlink(missing_ok=True)

    # -----------------------------------------------------------------------
    # Pending-mutation queue
    # -----------------------------------------------------------------------

    def pending_mutations(self, account: Account) -> list[LocalMutation]:
        return list(self.load_or_reset(account).pending_mutations)

    def apply_mutation(self, account: Account, mutation: LocalMutation) -> bool:
        """Queue a mutation. Returns False if an equivalent one is already queued.

        A queued DONE is never duplicated; a newer SNOOZE replaces the queued one.
        """
        with self._lock:
            snapshot = self.load_or_reset(account)
            queue = list(snapshot.pending_mutations)
            for index, queued in enumerate(queue):
                if (queued.item_id, queued.kind) != (mutation.item_id, mutation.kind):
                    continue
                if mutation.kind is MutationKind.DONE:
                    return False
                queue[index] = mutation
                break
            else:
                queue.append(mutation)
            self._write(account, snapshot.model_copy(update={"pending_mutations": queue}))
        return True

    def record_confirmed(self, account: Account, item_id: str, when: datetime) -> None:
        with self._lock:
            snapshot = self.load_or_reset(account)
            confirmed = {**snapshot.confirmed_done, item_id: when}
            self._write(account, snapshot.model_copy(update={"confirmed_done": confirmed}))

    def update_mutation(self, account: Account, mutation: LocalMutation) -> None:
        with self._lock:
            snapshot = self.load_or_reset(account)
            queue = [
                mutation if (m.item_id, m.kind) == (mutation.item_id, mutation.kind) else m
                for m in snapshot.pending_mutations
            ]
            self._write(account, snapshot.model_copy(update={"pending_mutations": queue}))

    def resolve_mutation(self, account: Account, item_id: str, kind: MutationKind = MutationKind.DONE) -> bool:
        """Drop a mutation once GitLab has acknowledged it. Returns False if it was not queued."""
        with self._lock:
            snapshot = self.load_or_reset(account)
            queue = [m for m in snapshot.pending_mutations if (m.item_id, m.kind) != (item_id, kind)]
            if len(queue) == len(snapshot.pending_mutations):
                return False
            self._write(account, snapshot.model_copy(update={"pending_mutations": queue}))
        return True
