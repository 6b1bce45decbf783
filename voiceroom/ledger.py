"""
Ledger store: the single consistency primitive of the economy.

Every operation runs a coroutine function against a ``LedgerTransaction``.
Reads see committed state plus the transaction's own writes; writes apply
together at commit or not at all. Two backends share the interface:

* ``MongoLedgerStore`` runs on motor client sessions (replica set required)
  and relies on ``with_transaction`` for transient-error retries.
* ``MemoryLedgerStore`` is an optimistic in-process store. It remembers the
  version of every record and the result of every query a transaction read,
  validates them at commit and retries conflicting attempts with bounded
  exponential backoff.
"""

import asyncio
import copy
import logging
import random
from abc import ABC, abstractmethod
from collections import defaultdict
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, Type, TypeVar

from pydantic import ValidationError

from .errors import CorruptRecordError, EconomyError, ErrorCode, TransactionConflict
from .models import Record

logger = logging.getLogger(__name__)

R = TypeVar("R", bound=Record)
T = TypeVar("T")

TransactionFn = Callable[["LedgerTransaction"], Awaitable[T]]


def to_document(record: Record) -> dict:
    """Plain dict for storage: enums become their values"""
    return _plain(record.model_dump())


def _plain(value):
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {k: _plain(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_plain(v) for v in value]
    return value


def from_document(model: Type[R], key: str, doc: Optional[dict]) -> Optional[R]:
    if doc is None:
        return None
    doc = {k: v for k, v in doc.items() if k != "_id"}
    try:
        return model.model_validate(doc)
    except ValidationError as e:
        raise CorruptRecordError(model.collection, key, str(e)) from e


class LedgerTransaction(ABC):
    @abstractmethod
    async def get(self, model: Type[R], key: str) -> Optional[R]:
        ...

    @abstractmethod
    async def put(self, record: Record) -> None:
        """Write the whole record, replacing any previous version"""

    @abstractmethod
    async def query(
        self,
        model: Type[R],
        filters: Dict[str, Any],
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> List[R]:
        """Records matching equality / $gt / $gte / $lt / $lte / $ne / $in filters"""

    @abstractmethod
    async def increment(
        self,
        model: Type[Record],
        key: str,
        field: str,
        amount: int,
        on_insert: Optional[Dict[str, Any]] = None,
        set_fields: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Blind commutative add; creates the record from ``on_insert`` if absent"""


class LedgerStore(ABC):
    @abstractmethod
    async def transaction(self, fn: TransactionFn) -> T:
        ...

    async def read(self, model: Type[R], key: str) -> Optional[R]:
        return await self.transaction(lambda tx: tx.get(model, key))

    async def save(self, record: Record) -> None:
        await self.transaction(lambda tx: tx.put(record))

    async def close(self) -> None:
        pass


# ==================== MONGODB ====================

class MongoTransaction(LedgerTransaction):
    def __init__(self, db, session):
        self._db = db
        self._session = session

    async def get(self, model, key):
        doc = await self._db[model.collection].find_one({"_id": key}, session=self._session)
        return from_document(model, key, doc)

    async def put(self, record):
        doc = to_document(record)
        doc["_id"] = record.key
        await self._db[record.collection].replace_one(
            {"_id": record.key}, doc, upsert=True, session=self._session
        )

    async def query(self, model, filters, order_by=None, descending=False, limit=None):
        cursor = self._db[model.collection].find(_plain(filters), session=self._session)
        if order_by:
            cursor = cursor.sort(order_by, -1 if descending else 1)
        if limit:
            cursor = cursor.limit(limit)
        docs = await cursor.to_list(limit)
        return [from_document(model, str(doc.get("_id")), doc) for doc in docs]

    async def increment(self, model, key, field, amount, on_insert=None, set_fields=None):
        update = {"$inc": {field: amount}}
        insert_fields = {k: v for k, v in _plain(on_insert or {}).items() if k != field}
        set_fields = _plain(set_fields or {})
        for name in set_fields:
            insert_fields.pop(name, None)
        if insert_fields:
            update["$setOnInsert"] = insert_fields
        if set_fields:
            update["$set"] = set_fields
        await self._db[model.collection].update_one(
            {"_id": key}, update, upsert=True, session=self._session
        )


class MongoLedgerStore(LedgerStore):
    def __init__(self, client, db_name: str):
        self._client = client
        self._db = client[db_name]

    async def transaction(self, fn):
        async with await self._client.start_session() as session:
            return await session.with_transaction(
                lambda s: fn(MongoTransaction(self._db, s))
            )

    async def close(self):
        self._client.close()


# ==================== IN-MEMORY ====================

_OPERATORS = {
    "$gt": lambda a, b: a is not None and a > b,
    "$gte": lambda a, b: a is not None and a >= b,
    "$lt": lambda a, b: a is not None and a < b,
    "$lte": lambda a, b: a is not None and a <= b,
    "$ne": lambda a, b: a != b,
    "$in": lambda a, b: a in b,
}


def _matches(doc: dict, filters: Dict[str, Any]) -> bool:
    for field, condition in filters.items():
        value = doc.get(field)
        if isinstance(condition, dict):
            for op, operand in condition.items():
                if op not in _OPERATORS:
                    raise ValueError(f"Unsupported filter operator {op}")
                if not _OPERATORS[op](value, operand):
                    return False
        elif value != condition:
            return False
    return True


def _select(
    docs: Dict[str, dict],
    filters: Dict[str, Any],
    order_by: Optional[str],
    descending: bool,
    limit: Optional[int],
) -> List[Tuple[str, dict]]:
    selected = [(key, doc) for key, doc in docs.items() if _matches(doc, filters)]
    if order_by:
        # None sorts last in both directions
        present = [item for item in selected if item[1].get(order_by) is not None]
        missing = [item for item in selected if item[1].get(order_by) is None]
        present.sort(key=lambda item: item[1][order_by], reverse=descending)
        selected = present + missing
    if limit:
        selected = selected[:limit]
    return selected


class MemoryTransaction(LedgerTransaction):
    def __init__(self, store: "MemoryLedgerStore"):
        self._store = store
        self._reads: Dict[Tuple[str, str], int] = {}
        self._queries: List[Tuple[str, dict, Optional[str], bool, Optional[int], tuple]] = []
        self._writes: Dict[Tuple[str, str], dict] = {}
        self._increments: List[Tuple[str, str, str, int, dict, dict]] = []

    async def get(self, model, key):
        # Yield so concurrent transactions interleave the way remote reads do
        await asyncio.sleep(0)
        ref = (model.collection, key)
        if ref in self._writes:
            return from_document(model, key, copy.deepcopy(self._writes[ref]))
        version, doc = self._store._lookup(model.collection, key)
        self._reads.setdefault(ref, version)
        return from_document(model, key, copy.deepcopy(doc))

    async def put(self, record):
        self._writes[(record.collection, record.key)] = to_document(record)

    async def query(self, model, filters, order_by=None, descending=False, limit=None):
        await asyncio.sleep(0)
        filters = _plain(filters)
        signature = self._store._signature(model.collection, filters, order_by, descending, limit)
        self._queries.append((model.collection, filters, order_by, descending, limit, signature))

        view = self._store._snapshot(model.collection)
        for (collection, key), doc in self._writes.items():
            if collection == model.collection:
                view[key] = doc
        return [
            from_document(model, key, copy.deepcopy(doc))
            for key, doc in _select(view, filters, order_by, descending, limit)
        ]

    async def increment(self, model, key, field, amount, on_insert=None, set_fields=None):
        self._increments.append(
            (model.collection, key, field, amount, _plain(on_insert or {}), _plain(set_fields or {}))
        )

    def is_stale(self) -> bool:
        for (collection, key), version in self._reads.items():
            if self._store._lookup(collection, key)[0] != version:
                return True
        for collection, filters, order_by, descending, limit, signature in self._queries:
            if self._store._signature(collection, filters, order_by, descending, limit) != signature:
                return True
        return False

    def commit(self) -> None:
        # No awaits below: validation and apply happen as one step on the loop
        if self.is_stale():
            raise TransactionConflict("read set changed before commit")
        for (collection, key), doc in self._writes.items():
            self._store._write(collection, key, doc)
        for collection, key, field, amount, on_insert, set_fields in self._increments:
            _, current = self._store._lookup(collection, key)
            doc = copy.deepcopy(current) if current is not None else dict(on_insert)
            doc[field] = doc.get(field, 0) + amount
            doc.update(set_fields)
            self._store._write(collection, key, doc)


class MemoryLedgerStore(LedgerStore):
    def __init__(self, max_attempts: int = 5, base_delay: float = 0.01, max_delay: float = 0.25):
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._data: Dict[str, Dict[str, Tuple[int, dict]]] = defaultdict(dict)
        self._clock = 0
        self.conflicts = 0

    def _lookup(self, collection: str, key: str) -> Tuple[int, Optional[dict]]:
        return self._data[collection].get(key, (0, None))

    def _snapshot(self, collection: str) -> Dict[str, dict]:
        return {key: doc for key, (_, doc) in self._data[collection].items()}

    def _signature(self, collection, filters, order_by, descending, limit) -> tuple:
        """Keys and versions a query returns against committed state"""
        entries = self._data[collection]
        selected = _select(self._snapshot(collection), filters, order_by, descending, limit)
        return tuple((key, entries[key][0]) for key, _ in selected)

    def _write(self, collection: str, key: str, doc: dict) -> None:
        self._clock += 1
        self._data[collection][key] = (self._clock, copy.deepcopy(doc))

    async def transaction(self, fn):
        for attempt in range(1, self.max_attempts + 1):
            tx = MemoryTransaction(self)
            try:
                result = await fn(tx)
                tx.commit()
                return result
            except EconomyError:
                # A rejection based on a torn read is a conflict, not an answer
                if not tx.is_stale():
                    raise
            except TransactionConflict:
                pass
            self.conflicts += 1
            if attempt == self.max_attempts:
                logger.warning(f"Ledger transaction gave up after {attempt} conflicting attempts")
                raise EconomyError(ErrorCode.CONFLICT)
            delay = min(self.max_delay, self.base_delay * (2 ** (attempt - 1))) * (1 + random.random())
            logger.info(f"Ledger conflict on attempt {attempt}, retrying in {delay:.3f}s")
            await asyncio.sleep(delay)
