import copy
import json
import logging
import os
import queue
import tempfile
import threading
from concurrent.futures import Future

from config import COLLECTIONS
from errors import StoreCorruption, ValidationError

logger = logging.getLogger(__name__)

# Upper bound on the number of cut points tried when repairing a damaged file.
MAX_REPAIR_ATTEMPTS = 256

_CLOSERS = {"{": "}", "[": "]"}


def _missing_closers(prefix: str) -> str | None:
    """
    Scans a JSON prefix and returns the brackets needed to close it.

    Returns None when the prefix cannot be closed by appending brackets alone,
    i.e. it ends inside a string or contains mismatched brackets.
    """
    stack = []
    in_string = False
    escaped = False
    for ch in prefix:
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch in _CLOSERS:
            stack.append(_CLOSERS[ch])
        elif ch in "}]":
            if not stack or stack.pop() != ch:
                return None
    if in_string:
        return None
    return "".join(reversed(stack))


def repair_json(text: str):
    """
    Attempts to recover a JSON value from damaged text.

    Args:
        text: The raw file contents that failed to parse.

    Returns:
        The parsed value of the longest prefix that could be closed and parsed.

    Raises:
        StoreCorruption: If no candidate parses within MAX_REPAIR_ATTEMPTS.
    """
    boundaries = [i for i, ch in enumerate(text) if ch in "}]"]
    for position in reversed(boundaries[-MAX_REPAIR_ATTEMPTS:]):
        prefix = text[:position + 1]
        closers = _missing_closers(prefix)
        if closers is None:
            continue
        try:
            return json.loads(prefix + closers)
        except json.JSONDecodeError:
            continue
    raise StoreCorruption("no recoverable JSON prefix found")


class DurableStore:
    """A single JSON document on disk holding every collection."""

    def __init__(self, path: str, collections: tuple = COLLECTIONS):
        self.path = path
        self.collections = tuple(collections)

    def empty_document(self) -> dict:
        return {name: [] for name in self.collections}

    def load(self) -> dict:
        """
        Reads the document, repairing or reinitializing it if the file is damaged.

        Whenever the returned document differs from what is on disk it is
        written back immediately, so a second load finds nothing to repair.
        """
        if not os.path.exists(self.path):
            document = self.empty_document()
            self.save(document)
            logger.info("Initialized empty store at %s", self.path)
            return document

        with open(self.path, "rb") as f:
            data = f.read()

        repaired = False
        try:
            text = data.decode("utf-8")
        except UnicodeDecodeError as error:
            logger.warning("Store %s is not valid UTF-8 (%s); replacing undecodable bytes", self.path, error)
            text = data.decode("utf-8", errors="replace")
            repaired = True

        try:
            raw = json.loads(text)
        except json.JSONDecodeError as error:
            logger.warning("Store %s is corrupted (%s); attempting repair", self.path, error)
            try:
                raw = repair_json(text)
                logger.warning("Recovered store %s from a truncated prefix", self.path)
            except StoreCorruption:
                logger.error("Store %s could not be repaired; reinitializing to an empty document", self.path)
                raw = self.empty_document()
            repaired = True

        document, normalized = self._normalize(raw)
        if repaired or normalized:
            self.save(document)
        return document

    def _normalize(self, raw) -> tuple[dict, bool]:
        if not isinstance(raw, dict):
            logger.warning("Store root is %s, not an object; reinitializing", type(raw).__name__)
            return self.empty_document(), True

        changed = False
        document = {}
        for name in self.collections:
            value = raw.get(name)
            if not isinstance(value, list):
                if value is not None:
                    logger.warning("Collection %s is not a list; resetting it", name)
                value = []
                changed = True
            records = [record for record in value if isinstance(record, dict)]
            if len(records) != len(value):
                logger.warning("Dropped %d malformed records from %s", len(value) - len(records), name)
                changed = True
            document[name] = records
        # Unknown top-level keys are carried along untouched.
        for key, value in raw.items():
            if key not in document:
                document[key] = value
        return document, changed

    def serialize(self, document: dict) -> str:
        """Renders the document, checking that it survives a JSON round trip."""
        if not isinstance(document, dict):
            raise ValidationError("Store document must be an object")
        for name in self.collections:
            if not isinstance(document.get(name), list):
                raise ValidationError(f"Store document is missing collection '{name}'")
        try:
            text = json.dumps(document, indent=2, ensure_ascii=False, allow_nan=False)
        except (TypeError, ValueError) as error:
            raise ValidationError(f"Store document is not serializable: {error}") from error
        if json.loads(text) != document:
            raise ValidationError("Store document does not round-trip through JSON")
        return text

    def save(self, document: dict):
        """Validates and overwrites the whole document in one replace."""
        text = self.serialize(document)
        directory = os.path.dirname(os.path.abspath(self.path))
        os.makedirs(directory, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(prefix=".store-", suffix=".json", dir=directory)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(text)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, self.path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise


_STOP = object()


class WriteSerializer:
    """
    Single-writer FIFO in front of a DurableStore.

    One background thread performs every physical write, so at most one write
    is in flight and writes complete in the order they were submitted. Each
    caller gets its own Future; a failed write only fails that Future.
    """

    def __init__(self, store: DurableStore):
        self.store = store
        self._queue = queue.Queue()
        self._lock = threading.Lock()
        self._thread = None
        self._closed = False
        self._busy = False

    @property
    def busy(self) -> bool:
        return self._busy

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def submit(self, document: dict) -> Future:
        future = Future()
        snapshot = copy.deepcopy(document)
        with self._lock:
            if self._closed:
                raise RuntimeError("write serializer is closed")
            if self._thread is None:
                self._thread = threading.Thread(target=self._run, name="store-writer", daemon=True)
                self._thread.start()
            self._queue.put((snapshot, future))
        return future

    def enqueue(self, document: dict, timeout: float | None = None):
        """Submits a full document and blocks until it has been written."""
        return self.submit(document).result(timeout)

    def flush(self):
        """Blocks until every write submitted so far has finished."""
        self._queue.join()

    def close(self, timeout: float | None = None):
        with self._lock:
            if self._closed:
                return
            self._closed = True
            thread = self._thread
        if thread is not None:
            self._queue.put(_STOP)
            thread.join(timeout)

    def _run(self):
        while True:
            item = self._queue.get()
            try:
                if item is _STOP:
                    return
                document, future = item
                if not future.set_running_or_notify_cancel():
                    continue
                self._busy = True
                try:
                    self.store.save(document)
                except Exception as error:
                    logger.error("Store write failed: %s", error)
                    future.set_exception(error)
                else:
                    future.set_result(None)
                finally:
                    self._busy = False
            finally:
                self._queue.task_done()
