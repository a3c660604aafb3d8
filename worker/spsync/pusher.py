import random
import threading
import time
from abc import ABC, abstractmethod
from concurrent.futures import Executor, Future
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, Mapping, Optional, Sequence

import requests

from spsync.acl import Acl
from spsync.models import GroupPrincipal, Principal
from spsync.runtime_logger import emit


# Returns True to retry the failed batch, False to give up on it.
PushErrorHandler = Callable[[Exception], bool]

GroupDefinitions = Mapping[GroupPrincipal, Sequence[Principal]]


class PushError(Exception):
    pass


@dataclass(frozen=True)
class Record:
    doc_id: str
    crawl_immediately: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {"doc_id": self.doc_id, "crawl_immediately": self.crawl_immediately}


class DocIdPusher(ABC):
    """Destination of document ids, ACL fragments and group rosters.

    Each method returns None on success, or the first item of a batch that
    was given up on.
    """

    @abstractmethod
    def push_records(self, records: Sequence[Record], handler: Optional[PushErrorHandler] = None) -> Optional[Record]:
        ...

    @abstractmethod
    def push_named_resources(self, resources: Mapping[str, Acl], handler: Optional[PushErrorHandler] = None) -> Optional[str]:
        ...

    @abstractmethod
    def push_group_definitions(
        self, definitions: GroupDefinitions, handler: Optional[PushErrorHandler] = None
    ) -> Optional[GroupPrincipal]:
        ...

    def push_doc_ids(self, doc_ids: Iterable[str], handler: Optional[PushErrorHandler] = None) -> Optional[str]:
        failed = self.push_records([Record(doc_id) for doc_id in doc_ids], handler)
        return failed.doc_id if failed is not None else None


class DelegatingPusher(DocIdPusher):
    """Forwards every push to another pusher; tests wrap it to observe calls."""

    def __init__(self, delegate: DocIdPusher):
        self._delegate = delegate

    def push_records(self, records, handler=None):
        return self._delegate.push_records(records, handler)

    def push_named_resources(self, resources, handler=None):
        return self._delegate.push_named_resources(resources, handler)

    def push_group_definitions(self, definitions, handler=None):
        return self._delegate.push_group_definitions(definitions, handler)

    def push_doc_ids(self, doc_ids, handler=None):
        return self._delegate.push_doc_ids(doc_ids, handler)


class HttpDocIdPusher(DocIdPusher):
    """Posts JSON batches to the search index feed endpoint."""

    RETRYABLE_STATUS_CODES = (408, 429, 500, 502, 503, 504)

    def __init__(
        self,
        push_url: str,
        token: str = "",
        *,
        batch_size: int = 5000,
        max_retries: int = 3,
        timeout: float = 60.0,
        session: Optional[requests.Session] = None,
    ):
        self._push_url = push_url.rstrip("/")
        self._token = token
        self._batch_size = batch_size
        self._max_retries = max_retries
        self._timeout = timeout
        self._session = session or requests.Session()

    def _post(self, path: str, payload: Dict[str, Any]):
        url = f"{self._push_url}/{path}"
        headers = {"Content-Type": "application/json"}
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        backoff = 2.0
        for attempt in range(self._max_retries + 1):
            try:
                resp = self._session.post(url, json=payload, headers=headers, timeout=self._timeout)
            except requests.RequestException as exc:
                if attempt >= self._max_retries:
                    raise PushError(f"Push to {url} failed: {exc}") from exc
                emit("WARN", "PUSHER", f"Push retrying after transport error: url={url} attempt={attempt + 1} error={exc}")
                time.sleep(backoff + random.uniform(0, 0.25))
                backoff = min(backoff * 2, 60)
                continue
            if resp.status_code in self.RETRYABLE_STATUS_CODES and attempt < self._max_retries:
                emit("WARN", "PUSHER", f"Push retrying after status={resp.status_code}: url={url} attempt={attempt + 1}")
                retry_after = resp.headers.get("Retry-After")
                if retry_after and retry_after.isdigit():
                    time.sleep(float(retry_after))
                else:
                    time.sleep(backoff + random.uniform(0, 0.25))
                    backoff = min(backoff * 2, 60)
                continue
            if not resp.ok:
                raise PushError(f"Push to {url} failed with status={resp.status_code}: {(resp.text or '')[:400]}")
            return
        raise PushError(f"Push to {url} exhausted retries")

    def _push_batches(self, path: str, key: str, items: list, encode: Callable[[Any], Any], handler: Optional[PushErrorHandler]):
        for start in range(0, len(items), self._batch_size):
            batch = items[start:start + self._batch_size]
            while True:
                try:
                    self._post(path, {key: [encode(item) for item in batch]})
                    break
                except PushError as exc:
                    emit("ERROR", "PUSHER", f"Push batch failed: path={path} size={len(batch)} error={exc}")
                    if handler is None:
                        raise
                    if not handler(exc):
                        return batch[0]
        return None

    def push_records(self, records, handler=None):
        return self._push_batches("records", "records", list(records), Record.to_dict, handler)

    def push_named_resources(self, resources, handler=None):
        items = list(resources.items())
        failed = self._push_batches(
            "named-resources",
            "resources",
            items,
            lambda item: {"doc_id": item[0], "acl": item[1].to_dict()},
            handler,
        )
        return failed[0] if failed is not None else None

    def push_group_definitions(self, definitions, handler=None):
        items = list(definitions.items())
        failed = self._push_batches(
            "groups",
            "groups",
            items,
            lambda item: {"group": item[0].to_dict(), "members": [m.to_dict() for m in item[1]]},
            handler,
        )
        return failed[0] if failed is not None else None


class BackgroundPusher:
    """Fire-and-forget pushes on a shared executor.

    At most ``max_pending`` pushes are queued; further ones are dropped with a
    warning so the submitting request never waits.
    """

    def __init__(self, pusher: DocIdPusher, executor: Executor, *, max_pending: int = 1000):
        self._pusher = pusher
        self._executor = executor
        self._slots = threading.BoundedSemaphore(max_pending)

    def _submit(self, what: str, fn: Callable[[], Any]) -> Optional[Future]:
        if not self._slots.acquire(blocking=False):
            emit("WARN", "PUSHER", f"Background push queue full, dropping push: what={what}")
            return None

        def run():
            try:
                return fn()
            finally:
                self._slots.release()

        try:
            future = self._executor.submit(run)
        except RuntimeError as exc:
            # Executor already shut down.
            self._slots.release()
            emit("WARN", "PUSHER", f"Background push rejected: what={what} error={exc}")
            return None
        future.add_done_callback(lambda f: self._log_failure(what, f))
        return future

    @staticmethod
    def _log_failure(what: str, future: Future):
        exc = future.exception()
        if exc is not None:
            emit("WARN", "PUSHER", f"Background push failed: what={what} error={exc}")

    def push_named_resource(self, doc_id: str, acl: Acl) -> Optional[Future]:
        return self._submit(f"named_resource:{doc_id}", lambda: self._pusher.push_named_resources({doc_id: acl}))

    def push_group_definitions(self, definitions: GroupDefinitions) -> Optional[Future]:
        snapshot = dict(definitions)
        return self._submit(f"groups:{len(snapshot)}", lambda: self._pusher.push_group_definitions(snapshot))


class GroupDefinitionBatcher:
    """Collects group rosters and pushes them once ``max_groups`` accumulate."""

    def __init__(self, pusher: DocIdPusher, max_groups: int):
        self._pusher = pusher
        self._max_groups = max_groups
        self._pending: Dict[GroupPrincipal, Sequence[Principal]] = {}
        self.pushed = 0

    def add(self, definitions: GroupDefinitions):
        self._pending.update(definitions)
        if len(self._pending) >= self._max_groups:
            self.flush()

    def flush(self):
        if not self._pending:
            return
        batch = self._pending
        self._pending = {}
        self._pusher.push_group_definitions(batch)
        self.pushed += len(batch)
