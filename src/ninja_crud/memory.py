"""In-memory, Motor-compatible document engine for testing and local development.

Implements the subset of the Motor collection API that ``MongoRepository``
relies on: filter operators ``$eq $ne $gt $gte $lt $lte $in $nin $exists
$regex $type $not $or $and $nor``, update operators ``$set $unset $inc``, cursors
with ``sort``/``skip``/``limit`` and aggregation stages ``$match $sort $skip
$limit $project $addFields $count $group``.
"""

from __future__ import annotations

import copy
import re
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from bson import ObjectId
from pymongo.errors import BulkWriteError, DuplicateKeyError

_MISSING: Any = object()

_TYPE_ALIASES: dict[str, type | tuple[type, ...]] = {
    "null": type(None),
    "string": str,
    "bool": bool,
    "double": float,
    "date": datetime,
    "objectId": ObjectId,
    "array": list,
    "object": dict,
}

_TYPE_RANK: dict[type, int] = {
    bool: 1,
    int: 2,
    float: 2,
    str: 3,
    dict: 4,
    list: 5,
    ObjectId: 6,
    datetime: 7,
}


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


@dataclass
class InsertOneResult:
    inserted_id: Any
    acknowledged: bool = True


@dataclass
class InsertManyResult:
    inserted_ids: list[Any] = field(default_factory=list)
    acknowledged: bool = True


@dataclass
class UpdateResult:
    matched_count: int
    modified_count: int
    acknowledged: bool = True


@dataclass
class DeleteResult:
    deleted_count: int
    acknowledged: bool = True


# ---------------------------------------------------------------------------
# Field paths
# ---------------------------------------------------------------------------


def _get_path(doc: Mapping[str, Any], path: str) -> Any:
    current: Any = doc
    for part in path.split("."):
        if isinstance(current, Mapping) and part in current:
            current = current[part]
        else:
            return _MISSING
    return current


def _index_key(doc: Mapping[str, Any], keys: tuple[str, ...]) -> tuple[Any, ...]:
    """Values a document contributes to an index; a missing field indexes as null."""
    values = (_get_path(doc, key) for key in keys)
    return tuple(None if value is _MISSING else value for value in values)


def _set_path(doc: dict[str, Any], path: str, value: Any) -> None:
    parts = path.split(".")
    current = doc
    for part in parts[:-1]:
        current = current.setdefault(part, {})
    current[parts[-1]] = value


def _unset_path(doc: dict[str, Any], path: str) -> None:
    parts = path.split(".")
    current: Any = doc
    for part in parts[:-1]:
        if not isinstance(current, dict) or part not in current:
            return
        current = current[part]
    if isinstance(current, dict):
        current.pop(parts[-1], None)


# ---------------------------------------------------------------------------
# Query matching
# ---------------------------------------------------------------------------


def _is_operator_dict(cond: Any) -> bool:
    return isinstance(cond, Mapping) and bool(cond) and all(str(k).startswith("$") for k in cond)


def _equals(value: Any, expected: Any) -> bool:
    if value is _MISSING:
        return expected is None
    if expected is None:
        return value is None
    if isinstance(value, list) and not isinstance(expected, list):
        return expected in value
    return value == expected


def _compare(value: Any, arg: Any, op: Callable[[Any, Any], bool]) -> bool:
    if value is _MISSING or value is None or arg is None:
        return False
    try:
        return op(value, arg)
    except TypeError:
        return False


def _regex_match(value: Any, pattern: Any, options: str = "") -> bool:
    if not isinstance(value, str):
        return False
    if isinstance(pattern, re.Pattern):
        return pattern.search(value) is not None
    flags = re.IGNORECASE if "i" in options else 0
    if "m" in options:
        flags |= re.MULTILINE
    return re.search(pattern, value, flags) is not None


def _type_match(value: Any, alias: str) -> bool:
    if value is _MISSING:
        return False
    if alias in ("int", "long"):
        return isinstance(value, int) and not isinstance(value, bool)
    expected = _TYPE_ALIASES.get(alias)
    if expected is None:
        raise ValueError(f"Unsupported $type alias: {alias}")
    return isinstance(value, expected)


def _apply_operator(value: Any, op: str, arg: Any, options: str) -> bool:
    if op == "$eq":
        return _equals(value, arg)
    if op == "$ne":
        return not _equals(value, arg)
    if op == "$gt":
        return _compare(value, arg, lambda a, b: a > b)
    if op == "$gte":
        return _compare(value, arg, lambda a, b: a >= b)
    if op == "$lt":
        return _compare(value, arg, lambda a, b: a < b)
    if op == "$lte":
        return _compare(value, arg, lambda a, b: a <= b)
    if op == "$in":
        return any(_equals(value, candidate) for candidate in arg)
    if op == "$nin":
        return not any(_equals(value, candidate) for candidate in arg)
    if op == "$exists":
        return (value is not _MISSING) == bool(arg)
    if op == "$type":
        return _type_match(value, arg)
    if op == "$regex":
        return _regex_match(value, arg, options)
    if op == "$not":
        return not _match_condition(value, arg)
    raise ValueError(f"Unsupported query operator: {op}")


def _match_condition(value: Any, cond: Any) -> bool:
    if isinstance(cond, re.Pattern):
        return _regex_match(value, cond)
    if _is_operator_dict(cond):
        options = cond.get("$options", "")
        return all(
            _apply_operator(value, op, arg, options) for op, arg in cond.items() if op != "$options"
        )
    return _equals(value, cond)


def matches(doc: Mapping[str, Any], query: Mapping[str, Any] | None) -> bool:
    """Return True if *doc* satisfies the Mongo-style *query*."""
    for key, cond in (query or {}).items():
        if key == "$or":
            if not any(matches(doc, sub) for sub in cond):
                return False
        elif key == "$and":
            if not all(matches(doc, sub) for sub in cond):
                return False
        elif key == "$nor":
            if any(matches(doc, sub) for sub in cond):
                return False
        elif key.startswith("$"):
            raise ValueError(f"Unsupported top-level operator: {key}")
        elif not _match_condition(_get_path(doc, key), cond):
            return False
    return True


# ---------------------------------------------------------------------------
# Sorting, projection, updates
# ---------------------------------------------------------------------------


def _sort_key(value: Any) -> tuple[int, Any]:
    if value is _MISSING or value is None:
        return (0, 0)
    rank = _TYPE_RANK.get(type(value))
    if rank is None:
        return (9, str(value))
    if rank in (4, 5):
        return (rank, str(value))
    return (rank, value)


def _normalize_sort(key_or_list: Any, direction: int | None = None) -> list[tuple[str, int]]:
    if isinstance(key_or_list, str):
        return [(key_or_list, direction or 1)]
    if isinstance(key_or_list, Mapping):
        return [(k, int(v)) for k, v in key_or_list.items()]
    return [(k, int(v)) for k, v in key_or_list]


def sort_documents(docs: list[dict[str, Any]], spec: list[tuple[str, int]]) -> list[dict[str, Any]]:
    result = list(docs)
    for key, direction in reversed(spec):
        result.sort(key=lambda d, k=key: _sort_key(_get_path(d, k)), reverse=direction < 0)
    return result


def _project(doc: dict[str, Any], projection: Mapping[str, Any] | Iterable[str] | None) -> dict[str, Any]:
    if not projection:
        return doc
    if not isinstance(projection, Mapping):
        projection = {name: 1 for name in projection}
    include_id = bool(projection.get("_id", 1))
    rest = {k: v for k, v in projection.items() if k != "_id"}
    if any(bool(v) for v in rest.values()):
        result = {}
        for key, flag in rest.items():
            if isinstance(flag, str) and flag.startswith("$"):
                value = _get_path(doc, flag[1:])
            elif flag:
                value = _get_path(doc, key)
            else:
                continue
            if value is not _MISSING:
                _set_path(result, key, value)
        if include_id and "_id" in doc:
            result["_id"] = doc["_id"]
        return result
    result = copy.deepcopy(doc)
    for key in rest:
        _unset_path(result, key)
    if not include_id:
        result.pop("_id", None)
    return result


def apply_update(doc: dict[str, Any], update: Mapping[str, Any]) -> bool:
    """Apply an operator-form update in place; return True if *doc* changed."""
    if not update or not all(str(k).startswith("$") for k in update):
        raise ValueError("update only works with $ operators")
    before = copy.deepcopy(doc)
    for op, fields in update.items():
        for path, value in fields.items():
            if path == "_id":
                raise ValueError("Performing an update on the path '_id' would modify the immutable field '_id'")
            if op == "$set":
                _set_path(doc, path, copy.deepcopy(value))
            elif op == "$unset":
                _unset_path(doc, path)
            elif op == "$inc":
                current = _get_path(doc, path)
                _set_path(doc, path, (0 if current is _MISSING or current is None else current) + value)
            else:
                raise ValueError(f"Unsupported update operator: {op}")
    return doc != before


# ---------------------------------------------------------------------------
# Aggregation
# ---------------------------------------------------------------------------


def _eval_expr(doc: Mapping[str, Any], expr: Any) -> Any:
    if isinstance(expr, str) and expr.startswith("$"):
        value = _get_path(doc, expr[1:])
        return None if value is _MISSING else value
    if isinstance(expr, Mapping):
        return {k: _eval_expr(doc, v) for k, v in expr.items()}
    return expr


def _group(docs: list[dict[str, Any]], spec: Mapping[str, Any]) -> list[dict[str, Any]]:
    groups: dict[str, dict[str, Any]] = {}
    members: dict[str, list[dict[str, Any]]] = {}
    for doc in docs:
        key_value = _eval_expr(doc, spec.get("_id"))
        key = repr(key_value)
        groups.setdefault(key, {"_id": key_value})
        members.setdefault(key, []).append(doc)
    results = []
    for key, row in groups.items():
        group_docs = members[key]
        for name, accumulator in spec.items():
            if name == "_id":
                continue
            (op, expr), = accumulator.items()
            values = [_eval_expr(d, expr) for d in group_docs]
            present = [v for v in values if v is not None]
            if op == "$sum":
                row[name] = sum(v for v in present if isinstance(v, (int, float)))
            elif op == "$avg":
                numeric = [v for v in present if isinstance(v, (int, float))]
                row[name] = sum(numeric) / len(numeric) if numeric else None
            elif op == "$min":
                row[name] = min(present) if present else None
            elif op == "$max":
                row[name] = max(present) if present else None
            elif op == "$push":
                row[name] = values
            elif op == "$first":
                row[name] = values[0] if values else None
            else:
                raise ValueError(f"Unsupported accumulator: {op}")
        results.append(row)
    return results


def run_pipeline(docs: list[dict[str, Any]], pipeline: Iterable[Mapping[str, Any]]) -> list[dict[str, Any]]:
    rows = [copy.deepcopy(d) for d in docs]
    for stage in pipeline:
        (name, spec), = stage.items()
        if name == "$match":
            rows = [r for r in rows if matches(r, spec)]
        elif name == "$sort":
            rows = sort_documents(rows, _normalize_sort(spec))
        elif name == "$skip":
            rows = rows[int(spec):]
        elif name == "$limit":
            rows = rows[: int(spec)]
        elif name == "$project":
            rows = [_project(r, spec) for r in rows]
        elif name == "$addFields":
            for r in rows:
                for key, expr in spec.items():
                    _set_path(r, key, _eval_expr(r, expr))
        elif name == "$count":
            rows = [{spec: len(rows)}] if rows else []
        elif name == "$group":
            rows = _group(rows, spec)
        else:
            raise ValueError(f"Unsupported aggregation stage: {name}")
    return rows


# ---------------------------------------------------------------------------
# Cursor, collection, database
# ---------------------------------------------------------------------------


class InMemoryCursor:
    """Async cursor over a snapshot of documents, mirroring Motor's chaining API."""

    def __init__(self, loader: Callable[[], list[dict[str, Any]]], projection: Any = None) -> None:
        self._loader = loader
        self._projection = projection
        self._sort: list[tuple[str, int]] = []
        self._skip = 0
        self._limit = 0
        self._results: list[dict[str, Any]] | None = None
        self._position = 0

    def sort(self, key_or_list: Any, direction: int | None = None) -> InMemoryCursor:
        self._sort = _normalize_sort(key_or_list, direction)
        return self

    def skip(self, count: int) -> InMemoryCursor:
        self._skip = count
        return self

    def limit(self, count: int) -> InMemoryCursor:
        self._limit = count
        return self

    def _materialize(self) -> list[dict[str, Any]]:
        if self._results is None:
            rows = self._loader()
            if self._sort:
                rows = sort_documents(rows, self._sort)
            rows = rows[self._skip :]
            if self._limit:
                rows = rows[: self._limit]
            self._results = [_project(copy.deepcopy(r), self._projection) for r in rows]
        return self._results

    def __aiter__(self) -> InMemoryCursor:
        return self

    async def __anext__(self) -> dict[str, Any]:
        results = self._materialize()
        if self._position >= len(results):
            raise StopAsyncIteration
        doc = results[self._position]
        self._position += 1
        return doc

    async def to_list(self, length: int | None = None) -> list[dict[str, Any]]:
        results = self._materialize()[self._position :]
        if length:
            results = results[:length]
        self._position += len(results)
        return results


class InMemoryCollection:
    """Dict-backed collection that mirrors the Motor collection methods used by the repository.

    Unique indexes created through :meth:`create_index` are enforced like
    Mongo enforces them: a missing field indexes as null, and a
    ``partialFilterExpression`` limits the index to the documents it matches.
    """

    def __init__(self, name: str) -> None:
        self.name = name
        self._docs: dict[Any, dict[str, Any]] = {}
        self._unique: list[tuple[tuple[str, ...], Mapping[str, Any] | None]] = []
        self.indexes: dict[str, dict[str, Any]] = {}

    def __len__(self) -> int:
        return len(self._docs)

    def _snapshot(self) -> list[dict[str, Any]]:
        return list(self._docs.values())

    def _find_matching(self, filter: Mapping[str, Any] | None, sort: Any = None) -> list[dict[str, Any]]:
        rows = [d for d in self._docs.values() if matches(d, filter)]
        if sort:
            rows = sort_documents(rows, _normalize_sort(sort))
        return rows

    def _check_unique(self, candidate: dict[str, Any]) -> None:
        for keys, partial in self._unique:
            if partial is not None and not matches(candidate, partial):
                continue
            values = _index_key(candidate, keys)
            for doc in self._docs.values():
                if doc.get("_id") == candidate.get("_id"):
                    continue
                if partial is not None and not matches(doc, partial):
                    continue
                if _index_key(doc, keys) == values:
                    raise DuplicateKeyError(
                        f"E11000 duplicate key error collection: {self.name} index: {'_'.join(keys)}",
                        11000,
                    )

    def _insert(self, document: dict[str, Any]) -> Any:
        if "_id" not in document:
            document["_id"] = ObjectId()
        if document["_id"] in self._docs:
            raise DuplicateKeyError(f"E11000 duplicate key error collection: {self.name} index: _id_", 11000)
        stored = copy.deepcopy(document)
        self._check_unique(stored)
        self._docs[stored["_id"]] = stored
        return stored["_id"]

    async def insert_one(self, document: dict[str, Any]) -> InsertOneResult:
        return InsertOneResult(inserted_id=self._insert(document))

    async def insert_many(self, documents: Iterable[dict[str, Any]], ordered: bool = True) -> InsertManyResult:
        inserted: list[Any] = []
        errors: list[dict[str, Any]] = []
        for index, document in enumerate(documents):
            try:
                inserted.append(self._insert(document))
            except DuplicateKeyError as exc:
                errors.append({"index": index, "code": 11000, "errmsg": str(exc)})
                if ordered:
                    break
        if errors:
            raise BulkWriteError({"writeErrors": errors, "nInserted": len(inserted)})
        return InsertManyResult(inserted_ids=inserted)

    def find(
        self,
        filter: Mapping[str, Any] | None = None,
        projection: Any = None,
        *,
        sort: Any = None,
        skip: int = 0,
        limit: int = 0,
    ) -> InMemoryCursor:
        cursor = InMemoryCursor(lambda: self._find_matching(filter), projection)
        if sort:
            cursor.sort(sort)
        return cursor.skip(skip).limit(limit)

    async def find_one(
        self, filter: Mapping[str, Any] | None = None, projection: Any = None, *, sort: Any = None
    ) -> dict[str, Any] | None:
        rows = self._find_matching(filter, sort)
        return _project(copy.deepcopy(rows[0]), projection) if rows else None

    async def find_one_and_update(
        self,
        filter: Mapping[str, Any],
        update: Mapping[str, Any],
        *,
        return_document: bool = False,
        sort: Any = None,
        **kwargs: Any,
    ) -> dict[str, Any] | None:
        rows = self._find_matching(filter, sort)
        if not rows:
            return None
        target = rows[0]
        before = copy.deepcopy(target)
        updated = copy.deepcopy(target)
        apply_update(updated, update)
        self._check_unique(updated)
        self._docs[target["_id"]] = updated
        return copy.deepcopy(updated if return_document else before)

    async def find_one_and_delete(
        self, filter: Mapping[str, Any], *, sort: Any = None, **kwargs: Any
    ) -> dict[str, Any] | None:
        rows = self._find_matching(filter, sort)
        if not rows:
            return None
        return self._docs.pop(rows[0]["_id"])

    async def update_one(self, filter: Mapping[str, Any], update: Mapping[str, Any], **kwargs: Any) -> UpdateResult:
        rows = self._find_matching(filter)
        if not rows:
            return UpdateResult(matched_count=0, modified_count=0)
        updated = copy.deepcopy(rows[0])
        changed = apply_update(updated, update)
        self._check_unique(updated)
        self._docs[updated["_id"]] = updated
        return UpdateResult(matched_count=1, modified_count=int(changed))

    async def update_many(self, filter: Mapping[str, Any], update: Mapping[str, Any], **kwargs: Any) -> UpdateResult:
        rows = self._find_matching(filter)
        modified = 0
        for row in rows:
            updated = copy.deepcopy(row)
            if apply_update(updated, update):
                self._check_unique(updated)
                self._docs[updated["_id"]] = updated
                modified += 1
        return UpdateResult(matched_count=len(rows), modified_count=modified)

    async def delete_one(self, filter: Mapping[str, Any]) -> DeleteResult:
        rows = self._find_matching(filter)
        if rows:
            del self._docs[rows[0]["_id"]]
        return DeleteResult(deleted_count=len(rows[:1]))

    async def delete_many(self, filter: Mapping[str, Any]) -> DeleteResult:
        rows = self._find_matching(filter)
        for row in rows:
            del self._docs[row["_id"]]
        return DeleteResult(deleted_count=len(rows))

    async def count_documents(self, filter: Mapping[str, Any], *, skip: int = 0, limit: int = 0) -> int:
        count = max(0, len(self._find_matching(filter)) - skip)
        return min(count, limit) if limit else count

    def aggregate(self, pipeline: Iterable[Mapping[str, Any]], **kwargs: Any) -> InMemoryCursor:
        stages = list(pipeline)
        return InMemoryCursor(lambda: run_pipeline(self._snapshot(), stages))

    async def create_index(self, keys: Any, *, unique: bool = False, **kwargs: Any) -> str:
        spec = _normalize_sort(keys)
        name = kwargs.get("name") or "_".join(f"{k}_{d}" for k, d in spec)
        self.indexes[name] = {"key": spec, "unique": unique}
        if "partialFilterExpression" in kwargs:
            self.indexes[name]["partialFilterExpression"] = kwargs["partialFilterExpression"]
        if unique:
            self._unique.append((tuple(k for k, _ in spec), kwargs.get("partialFilterExpression")))
        return name


class InMemoryDatabase:
    """Collection namespace; ``database[name]`` returns (and creates) a collection."""

    def __init__(self, name: str = "ninja_crud") -> None:
        self.name = name
        self._collections: dict[str, InMemoryCollection] = {}

    def __getitem__(self, name: str) -> InMemoryCollection:
        return self.get_collection(name)

    def get_collection(self, name: str) -> InMemoryCollection:
        if name not in self._collections:
            self._collections[name] = InMemoryCollection(name)
        return self._collections[name]

    async def list_collection_names(self) -> list[str]:
        return sorted(self._collections)

    async def drop_collection(self, name: str) -> None:
        self._collections.pop(name, None)
