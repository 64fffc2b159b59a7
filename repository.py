import copy
import logging
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone

from config import COLLECTIONS, HOSTEL_SCOPED, UNIQUE_RULES
from errors import Conflict, NotFound, ValidationError
from store import DurableStore, WriteSerializer

logger = logging.getLogger(__name__)


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _blank(value) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def _key(value) -> str:
    return str(value).strip().lower()


def _same(left, right) -> bool:
    if _blank(left) or _blank(right):
        return _blank(left) and _blank(right)
    return str(left) == str(right)


class IdGenerator:
    """Millisecond timestamps as strings, strictly increasing even within one millisecond."""

    def __init__(self, clock=None):
        self._clock = clock or (lambda: int(time.time() * 1000))
        self._last = 0
        self._lock = threading.Lock()

    def __call__(self) -> str:
        with self._lock:
            value = max(int(self._clock()), self._last + 1)
            self._last = value
            return str(value)


@dataclass(frozen=True)
class ChangeEvent:
    collection: str
    action: str  # "created" | "updated" | "deleted"
    before: dict | None
    after: dict | None

    def changed(self, field: str) -> bool:
        before = (self.before or {}).get(field)
        after = (self.after or {}).get(field)
        return before != after


class CollectionLocks:
    """One re-entrant lock per collection, always acquired in sorted name order."""

    def __init__(self):
        self._locks = {}
        self._guard = threading.Lock()

    def _lock_for(self, name: str) -> threading.RLock:
        with self._guard:
            if name not in self._locks:
                self._locks[name] = threading.RLock()
            return self._locks[name]

    @contextmanager
    def hold(self, *names):
        acquired = []
        try:
            for name in sorted(set(names)):
                lock = self._lock_for(name)
                lock.acquire()
                acquired.append(lock)
            yield
        finally:
            for lock in reversed(acquired):
                lock.release()


class Transaction:
    """
    A unit of work over a fixed set of locked collections.

    Locked collections are worked on as private list copies. Records are never
    mutated in place; inserts and updates put new dicts into the copy, so the
    committed lists stay untouched until the repository swaps them in.
    """

    def __init__(self, repository: "EntityRepository", collections: tuple):
        self._repository = repository
        self.collections = collections
        self._working = {name: list(repository._committed(name)) for name in collections}
        self.dirty = set()
        self.events = []

    # --- reads ---

    def _records(self, collection: str) -> list:
        if collection not in self._working:
            raise RuntimeError(f"collection '{collection}' is not locked by this transaction")
        return self._working[collection]

    def _view(self, collection: str) -> list:
        if collection in self._working:
            return self._working[collection]
        return self._repository._committed(collection)

    def all(self, collection: str) -> list:
        return copy.deepcopy(self._view(collection))

    def find(self, collection: str, record_id) -> dict:
        for record in self._view(collection):
            if str(record.get("id")) == str(record_id):
                return copy.deepcopy(record)
        raise NotFound(collection, str(record_id))

    def find_by(self, collection: str, field: str, value) -> dict | None:
        if _blank(value):
            return None
        for record in self._view(collection):
            if not _blank(record.get(field)) and _key(record.get(field)) == _key(value):
                return copy.deepcopy(record)
        return None

    def _locate(self, collection: str, record_id) -> tuple[int, dict]:
        for index, record in enumerate(self._records(collection)):
            if str(record.get("id")) == str(record_id):
                return index, record
        raise NotFound(collection, str(record_id))

    # --- writes ---

    def insert(self, collection: str, data: dict) -> dict:
        if not isinstance(data, dict):
            raise ValidationError(f"{collection} record must be an object")
        records = self._records(collection)
        record = copy.deepcopy(data)
        now = utc_now()

        record_id = record.get("id")
        record["id"] = self._repository.next_id() if _blank(record_id) else str(record_id)
        if any(str(existing.get("id")) == record["id"] for existing in records):
            raise Conflict(f"{collection} id '{record['id']}' already exists", field="id", scope="global")
        if collection in HOSTEL_SCOPED and _blank(record.get("hostelId")):
            raise ValidationError(f"{collection} records require a hostelId", field="hostelId")
        record.setdefault("createdAt", now)
        record["updatedAt"] = now

        self._check_unique(collection, record, fields=None)
        records.append(record)
        self._record_change(collection, "created", None, record)
        return copy.deepcopy(record)

    def update(self, collection: str, record_id, changes: dict) -> dict:
        if not isinstance(changes, dict):
            raise ValidationError(f"{collection} changes must be an object")
        records = self._records(collection)
        index, existing = self._locate(collection, record_id)

        changes = copy.deepcopy(changes)
        new_id = changes.pop("id", None)
        if not _blank(new_id) and str(new_id) != str(existing["id"]):
            raise ValidationError(f"{collection} id is immutable", field="id")
        changes.pop("createdAt", None)
        if collection in HOSTEL_SCOPED and "hostelId" in changes and _blank(changes["hostelId"]):
            raise ValidationError(f"{collection} records require a hostelId", field="hostelId")

        merged = {**existing, **changes, "updatedAt": utc_now()}
        if not _same(existing.get("hostelId"), merged.get("hostelId")):
            fields = None
        else:
            fields = [name for name in changes if _key(existing.get(name)) != _key(changes[name])]
        self._check_unique(collection, merged, fields=fields, exclude_id=existing["id"])

        records[index] = merged
        self._record_change(collection, "updated", existing, merged)
        return copy.deepcopy(merged)

    def delete(self, collection: str, record_id, force: bool = False) -> dict:
        records = self._records(collection)
        index, existing = self._locate(collection, record_id)

        if collection == "rooms":
            occupants = self._room_occupants(existing)
            if occupants:
                names = ", ".join(str(t.get("name") or t.get("id")) for t in occupants)
                raise Conflict(
                    f"Room {existing.get('roomNumber', existing['id'])} cannot be deleted: "
                    f"it is assigned to tenant(s) {names}",
                    field="roomNumber",
                    scope="hostel",
                    tenants=[t.get("id") for t in occupants],
                )
        if collection == "complaints" and not force:
            raise Conflict("Complaints cannot be deleted without an administrative override", field="id")

        del records[index]
        self._record_change(collection, "deleted", existing, None)
        return copy.deepcopy(existing)

    def _room_occupants(self, room: dict) -> list:
        room_number = room.get("roomNumber")
        occupants = []
        for tenant in self._view("tenants"):
            if not _same(tenant.get("hostelId"), room.get("hostelId")):
                continue
            by_id = not _blank(tenant.get("roomId")) and str(tenant["roomId"]) == str(room["id"])
            by_number = not _blank(room_number) and any(
                not _blank(tenant.get(field)) and _key(tenant[field]) == _key(room_number)
                for field in ("roomNumber", "room")
            )
            if by_id or by_number:
                occupants.append(tenant)
        return occupants

    def _check_unique(self, collection: str, record: dict, fields=None, exclude_id=None):
        rule = UNIQUE_RULES.get(collection)
        if rule is None:
            return
        candidates = [
            other for other in self._records(collection)
            if exclude_id is None or str(other.get("id")) != str(exclude_id)
        ]
        if rule.scope == "hostel":
            candidates = [other for other in candidates if _same(other.get("hostelId"), record.get("hostelId"))]

        for field in rule.fields:
            if fields is not None and field not in fields:
                continue
            value = record.get(field)
            if _blank(value):
                continue
            for other in candidates:
                if not _blank(other.get(field)) and _key(other[field]) == _key(value):
                    where = "store-wide" if rule.scope == "global" else f"in hostel {record.get('hostelId')}"
                    raise Conflict(
                        f"{collection} {field} '{value}' already exists {where}",
                        field=field,
                        scope=rule.scope,
                    )

    def _record_change(self, collection: str, action: str, before, after):
        self.dirty.add(collection)
        self.events.append(ChangeEvent(
            collection,
            action,
            copy.deepcopy(before) if before is not None else None,
            copy.deepcopy(after) if after is not None else None,
        ))


class EntityRepository:
    """
    Collection operations over the store document.

    The committed document is held in memory and only replaced collection by
    collection on commit. Every commit submits a full snapshot to the write
    serializer and waits for it before releasing its collection locks.
    """

    def __init__(self, store: DurableStore, serializer: WriteSerializer | None = None, id_factory=None):
        self.store = store
        self.serializer = serializer or WriteSerializer(store)
        self.next_id = id_factory or IdGenerator()
        self._locks = CollectionLocks()
        self._state_lock = threading.Lock()
        self._document = None
        self._listeners = []
        self._local = threading.local()

    def subscribe(self, listener):
        """Registers a callable receiving every ChangeEvent after it is committed."""
        self._listeners.append(listener)

    def _ensure_loaded(self):
        with self._state_lock:
            if self._document is None:
                self._document = self.store.load()

    def _committed(self, collection: str) -> list:
        self._ensure_loaded()
        with self._state_lock:
            return self._document[collection]

    @staticmethod
    def _check_collection(collection: str):
        if collection not in COLLECTIONS:
            raise NotFound("collections", collection)

    @contextmanager
    def transaction(self, *collections):
        for collection in collections:
            self._check_collection(collection)
        if getattr(self._local, "active", False):
            raise RuntimeError("nested repository transactions are not supported")
        self._ensure_loaded()

        self._local.active = True
        try:
            with self._locks.hold(*collections):
                tx = Transaction(self, tuple(collections))
                yield tx
                self._commit(tx)
        finally:
            self._local.active = False
        self._publish(tx.events)

    def _commit(self, tx: Transaction):
        if not tx.dirty:
            return
        with self._state_lock:
            previous = {name: self._document[name] for name in tx.dirty}
            for name in tx.dirty:
                self._document[name] = tx._working[name]
            future = self.serializer.submit(dict(self._document))
        try:
            future.result()
        except Exception:
            with self._state_lock:
                self._document.update(previous)
            raise
        logger.debug("Committed %s", ", ".join(sorted(tx.dirty)))

    def _publish(self, events):
        for event in events:
            for listener in self._listeners:
                try:
                    listener(event)
                except Exception:
                    logger.exception("Change listener failed for %s %s", event.collection, event.action)

    # --- collection operations ---

    def list(self, collection: str, **filters) -> list:
        self._check_collection(collection)
        records = self._committed(collection)
        wanted = {field: value for field, value in filters.items() if value is not None}
        return [
            copy.deepcopy(record) for record in records
            if all(_same(record.get(field), value) for field, value in wanted.items())
        ]

    def get(self, collection: str, record_id) -> dict:
        self._check_collection(collection)
        for record in self._committed(collection):
            if str(record.get("id")) == str(record_id):
                return copy.deepcopy(record)
        raise NotFound(collection, str(record_id))

    def create(self, collection: str, data: dict) -> dict:
        with self.transaction(collection) as tx:
            record = tx.insert(collection, data)
        logger.info("Created %s %s", collection, record["id"])
        return record

    def update(self, collection: str, record_id, changes: dict) -> dict:
        with self.transaction(collection) as tx:
            record = tx.update(collection, record_id, changes)
        logger.info("Updated %s %s", collection, record_id)
        return record

    def delete(self, collection: str, record_id, force: bool = False) -> dict:
        collections = (collection, "tenants") if collection == "rooms" else (collection,)
        with self.transaction(*collections) as tx:
            record = tx.delete(collection, record_id, force=force)
        logger.info("Deleted %s %s", collection, record_id)
        return record

    def close(self):
        self.serializer.close()


class CollectionService:
    """Default service for a collection: plain repository operations plus audit stamps."""

    def __init__(self, repository: EntityRepository, collection: str):
        self.repository = repository
        self.collection = collection

    @staticmethod
    def _stamp(data: dict, actor: dict | None) -> dict:
        data = dict(data)
        if actor:
            data["lastModifiedBy"] = actor.get("name") or actor.get("id")
            data["lastModifiedByRole"] = actor.get("role")
            data["lastModifiedDate"] = utc_now()
        return data

    def list(self, **filters) -> list:
        return self.repository.list(self.collection, **filters)

    def get(self, record_id) -> dict:
        return self.repository.get(self.collection, record_id)

    def create(self, data: dict, actor: dict | None = None) -> dict:
        return self.repository.create(self.collection, self._stamp(data, actor))

    def update(self, record_id, changes: dict, actor: dict | None = None) -> dict:
        return self.repository.update(self.collection, record_id, self._stamp(changes, actor))

    def delete(self, record_id, force: bool = False) -> dict:
        return self.repository.delete(self.collection, record_id, force=force)
