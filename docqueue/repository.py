import json
import logging
import sqlite3
from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Any, Iterable, List, Mapping, Optional, Sequence, Tuple

from bson import ObjectId
from bson.errors import InvalidId
from pymongo import ASCENDING, ReturnDocument
from pymongo.errors import PyMongoError

from .config import client_options
from .db import check_table_name, connect_db, connect_mongo, init_db, is_mongo_uri
from .models import ID, PRIORITY, RESERVED, StoreError, Task, TaskValidationError

logger = logging.getLogger(__name__)

Filter = Mapping[str, Any]
Update = Mapping[str, Mapping[str, Any]]
Sort = Sequence[Tuple[str, int]]


class TaskStore(ABC):
    """
    The store operations the queue is built from.

    Filters, updates and sorts use the MongoDB query dialect. No retries,
    no caching: failures surface as StoreError.
    """

    @abstractmethod
    def insert(self, document: Mapping[str, Any]) -> Any:
        """Insert one document and return its identity."""

    @abstractmethod
    def find_and_update(self, filter: Filter, update: Update, sort: Optional[Sort] = None) -> Optional[Task]:
        """Atomically update the first match and return it as it was before the update."""

    @abstractmethod
    def bulk_update(self, filter: Filter, update: Update) -> int:
        """Update every match; returns the number of documents modified."""

    @abstractmethod
    def find(
        self,
        filter: Filter,
        fields: Optional[Iterable[str]] = None,
        sort: Optional[Sort] = None,
        limit: Optional[int] = None,
        skip: Optional[int] = None,
    ) -> List[Task]:
        ...

    @abstractmethod
    def count(self, filter: Filter) -> int:
        ...

    @abstractmethod
    def delete(self, filter: Filter) -> int:
        """Delete at most one matching document."""

    @abstractmethod
    def ensure_indexes(self) -> None:
        ...

    @abstractmethod
    def parse_id(self, text: str) -> Any:
        """Turn a textual task id (e.g. from the command line) into an identity."""


# ---------- MongoDB ----------
class MongoTaskStore(TaskStore):
    """Task store over a pymongo collection."""

    def __init__(self, collection):
        self.collection = collection

    @contextmanager
    def _errors(self, action: str):
        try:
            yield
        except PyMongoError as e:
            raise StoreError(f"MongoDB error while {action}: {e}") from e

    def insert(self, document):
        with self._errors("inserting task"):
            result = self.collection.insert_one(dict(document))
        return result.inserted_id

    def find_and_update(self, filter, update, sort=None):
        with self._errors("updating task"):
            return self.collection.find_one_and_update(
                dict(filter),
                dict(update),
                sort=list(sort) if sort else None,
                return_document=ReturnDocument.BEFORE,
            )

    def bulk_update(self, filter, update):
        with self._errors("updating tasks"):
            return self.collection.update_many(dict(filter), dict(update)).modified_count

    def find(self, filter, fields=None, sort=None, limit=None, skip=None):
        with self._errors("searching tasks"):
            cursor = self.collection.find(dict(filter), projection=_mongo_projection(fields))
            if sort:
                cursor = cursor.sort(list(sort))
            if skip:
                cursor = cursor.skip(int(skip))
            if limit:
                cursor = cursor.limit(int(limit))
            return list(cursor)

    def count(self, filter):
        with self._errors("counting tasks"):
            return self.collection.count_documents(dict(filter))

    def delete(self, filter):
        with self._errors("removing task"):
            return self.collection.delete_one(dict(filter)).deleted_count

    def ensure_indexes(self):
        with self._errors("creating indexes"):
            self.collection.create_index([(PRIORITY, ASCENDING)])

    def parse_id(self, text):
        try:
            return ObjectId(text)
        except (InvalidId, TypeError):
            raise TaskValidationError(f"Invalid task id: {text!r}")


def _mongo_projection(fields):
    if fields is None or isinstance(fields, Mapping):
        return fields
    return list(fields)


# ---------- SQLite ----------
_COLUMNS = {ID: "id", PRIORITY: "priority", RESERVED: "reserved_at"}

_COMPARISONS = {"$lt": "<", "$lte": "<=", "$gt": ">", "$gte": ">="}


class SQLiteTaskStore(TaskStore):
    """
    Task store over a SQLite table.

    Control fields live in their own columns, caller data in a JSON column.
    Each call opens its own connection, so one instance can be shared
    between threads.
    """

    def __init__(self, path: str, table: str = "queue"):
        self.path = str(path)
        self.table = check_table_name(table)
        self.ensure_indexes()

    @contextmanager
    def _conn(self, action: str):
        conn = None
        try:
            conn = connect_db(self.path)
            yield conn
        except sqlite3.Error as e:
            if conn is not None and conn.in_transaction:
                conn.execute("ROLLBACK")
            raise StoreError(f"DB error while {action}: {e}") from e
        finally:
            if conn is not None:
                conn.close()

    # ---- translation helpers ----
    @staticmethod
    def _field(name: str) -> Tuple[str, List[Any]]:
        """SQL expression (and its params) for a document field."""
        if name in _COLUMNS:
            return _COLUMNS[name], []
        return "json_extract(data, ?)", [_json_path(name)]

    def _where(self, filter: Filter) -> Tuple[str, List[Any]]:
        clauses, params = [], []
        for key, cond in filter.items():
            if key in ("$and", "$or"):
                parts = [self._where(sub) for sub in cond]
                if not parts:
                    raise ValueError(f"{key} needs at least one clause")
                joiner = " AND " if key == "$and" else " OR "
                clauses.append("(" + joiner.join(p[0] for p in parts) + ")")
                for p in parts:
                    params.extend(p[1])
                continue
            if key.startswith("$"):
                raise ValueError(f"Unsupported query operator: {key}")

            if isinstance(cond, Mapping) and cond and all(str(k).startswith("$") for k in cond):
                for op, value in cond.items():
                    sql, p = self._condition(key, op, value)
                    clauses.append(sql)
                    params.extend(p)
            else:
                sql, p = self._condition(key, "$eq", cond)
                clauses.append(sql)
                params.extend(p)
        return (" AND ".join(clauses) or "1=1"), params

    def _condition(self, name: str, op: str, value: Any) -> Tuple[str, List[Any]]:
        expr, p = self._field(name)
        if op == "$exists":
            if name in _COLUMNS:
                return f"{expr} IS {'NOT ' if value else ''}NULL", p
            # json_type distinguishes a stored null from a missing key.
            return f"json_type(data, ?) IS {'NOT ' if value else ''}NULL", [_json_path(name)]
        if op == "$eq":
            if value is None:
                return f"{expr} IS NULL", p
            return f"{expr} = ?", p + [_sql_value(value)]
        if op == "$ne":
            if value is None:
                return f"{expr} IS NOT NULL", p
            return f"({expr} IS NULL OR {expr} != ?)", p + p + [_sql_value(value)]
        if op in _COMPARISONS:
            return f"{expr} {_COMPARISONS[op]} ?", p + [_sql_value(value)]
        if op in ("$in", "$nin"):
            values = [_sql_value(v) for v in value]
            if not values:
                return ("0=1" if op == "$in" else "1=1"), []
            marks = ",".join("?" for _ in values)
            if op == "$in":
                return f"{expr} IN ({marks})", p + values
            return f"({expr} IS NULL OR {expr} NOT IN ({marks}))", p + p + values
        raise ValueError(f"Unsupported query operator: {op}")

    def _order_by(self, sort: Optional[Sort]) -> Tuple[str, List[Any]]:
        if not sort:
            return "", []
        parts, params = [], []
        for name, direction in sort:
            expr, p = self._field(name)
            parts.append(f"{expr} {'DESC' if direction < 0 else 'ASC'}")
            params.extend(p)
        return " ORDER BY " + ", ".join(parts), params

    def _set_clause(self, update: Update) -> Tuple[str, List[Any]]:
        columns, params = [], []
        data_expr, data_params = "data", []
        for op, changes in update.items():
            if op not in ("$set", "$unset"):
                raise ValueError(f"Unsupported update operator: {op}")
            for name, value in changes.items():
                if name == ID:
                    raise ValueError("Task identity cannot be updated")
                if name in _COLUMNS:
                    if op == "$set":
                        columns.append(f"{_COLUMNS[name]} = ?")
                        params.append(value)
                    else:
                        columns.append(f"{_COLUMNS[name]} = NULL")
                elif op == "$set":
                    data_expr = f"json_set({data_expr}, ?, json(?))"
                    data_params += [_json_path(name), _to_json(value)]
                else:
                    data_expr = f"json_remove({data_expr}, ?)"
                    data_params.append(_json_path(name))
        if data_expr != "data":
            columns.append(f"data = {data_expr}")
            params.extend(data_params)
        if not columns:
            raise ValueError("Update has no changes")
        return ", ".join(columns), params

    @staticmethod
    def _row_to_task(row: sqlite3.Row, fields: Optional[Iterable[str]] = None) -> Task:
        task: Task = {ID: row["id"]}
        task.update(json.loads(row["data"] or "{}"))
        task[PRIORITY] = row["priority"]
        if row["reserved_at"] is not None:
            task[RESERVED] = row["reserved_at"]
        return _project(task, fields)

    # ---- TaskStore ----
    def insert(self, document):
        doc = dict(document)
        doc.pop(ID, None)
        priority = doc.pop(PRIORITY)
        reserved_at = doc.pop(RESERVED, None)
        data = _to_json(doc)
        with self._conn("inserting task") as conn:
            cur = conn.execute(
                f"INSERT INTO {self.table} (priority, reserved_at, data) VALUES (?, ?, ?)",
                (priority, reserved_at, data),
            )
            return cur.lastrowid

    def find_and_update(self, filter, update, sort=None):
        where, params = self._where(filter)
        order, order_params = self._order_by(sort)
        set_sql, set_params = self._set_clause(update)
        with self._conn("updating task") as conn:
            # IMMEDIATE takes the write lock before the read, so only one
            # caller can select a given row and claim it.
            conn.execute("BEGIN IMMEDIATE")
            row = conn.execute(
                f"SELECT * FROM {self.table} WHERE {where}{order} LIMIT 1",
                params + order_params,
            ).fetchone()
            if row is not None:
                conn.execute(
                    f"UPDATE {self.table} SET {set_sql} WHERE id = ?",
                    set_params + [row["id"]],
                )
            conn.execute("COMMIT")
        return self._row_to_task(row) if row is not None else None

    def bulk_update(self, filter, update):
        where, params = self._where(filter)
        set_sql, set_params = self._set_clause(update)
        with self._conn("updating tasks") as conn:
            cur = conn.execute(f"UPDATE {self.table} SET {set_sql} WHERE {where}", set_params + params)
            return cur.rowcount

    def find(self, filter, fields=None, sort=None, limit=None, skip=None):
        where, params = self._where(filter)
        order, order_params = self._order_by(sort)
        sql = f"SELECT * FROM {self.table} WHERE {where}{order}"
        params = params + order_params
        if limit or skip:
            sql += " LIMIT ? OFFSET ?"
            params += [int(limit) if limit else -1, int(skip or 0)]
        with self._conn("searching tasks") as conn:
            rows = conn.execute(sql, params).fetchall()
        return [self._row_to_task(r, fields) for r in rows]

    def count(self, filter):
        where, params = self._where(filter)
        with self._conn("counting tasks") as conn:
            (n,) = conn.execute(f"SELECT COUNT(*) FROM {self.table} WHERE {where}", params).fetchone()
        return int(n)

    def delete(self, filter):
        where, params = self._where(filter)
        with self._conn("removing task") as conn:
            cur = conn.execute(
                f"DELETE FROM {self.table} WHERE id IN (SELECT id FROM {self.table} WHERE {where} LIMIT 1)",
                params,
            )
            return cur.rowcount

    def ensure_indexes(self):
        try:
            init_db(self.path, self.table)
        except sqlite3.Error as e:
            raise StoreError(f"DB error while creating indexes: {e}") from e

    def parse_id(self, text):
        try:
            return int(text)
        except (TypeError, ValueError):
            raise TaskValidationError(f"Invalid task id: {text!r}")


def _json_path(name: str) -> str:
    return "$" + "".join(f'."{part}"' for part in name.split("."))


def _sql_value(value: Any) -> Any:
    if isinstance(value, (dict, list)):
        raise ValueError("Matching on embedded documents or arrays is not supported by the SQLite store")
    return value


def _to_json(value: Any) -> str:
    try:
        return json.dumps(value)
    except (TypeError, ValueError) as e:
        raise TaskValidationError(f"Task data is not JSON-serializable for the SQLite store: {e}")


def _exclude(doc: Mapping[str, Any], path: List[str]) -> Any:
    head, rest = path[0], path[1:]
    out = dict(doc)
    if head in out:
        if not rest:
            del out[head]
        elif isinstance(out[head], Mapping):
            out[head] = _exclude(out[head], rest)
    return out


def _include(src: Mapping[str, Any], dest: dict, path: List[str]) -> None:
    head, rest = path[0], path[1:]
    if head not in src:
        return
    if not rest:
        dest[head] = src[head]
    elif isinstance(src[head], Mapping):
        sub = dest.get(head)
        if not isinstance(sub, dict):
            sub = {}
        _include(src[head], sub, rest)
        if sub:
            dest[head] = sub


def _project(task: Task, fields: Optional[Iterable[str]]) -> Task:
    """Apply a Mongo-style projection; dotted names select into embedded documents."""
    if fields is None:
        return task
    if isinstance(fields, Mapping):
        wanted = [k for k, v in fields.items() if v]
        if not wanted:
            # Exclusion projection, e.g. {"payload": 0} or {"to.host": 0}
            out = task
            for name in fields:
                out = _exclude(out, name.split("."))
            return out
        keep_id = fields.get(ID, 1)
    else:
        wanted, keep_id = list(fields), True
    out: Task = {}
    if keep_id:
        out[ID] = task[ID]
    for name in wanted:
        if name != ID:
            _include(task, out, name.split("."))
    return out


def open_store(config: Mapping[str, str]) -> TaskStore:
    """Build the task store named by a loaded configuration."""
    uri = config["store_uri"]
    if is_mongo_uri(uri):
        return MongoTaskStore(connect_mongo(
            uri, config["database_name"], config["collection_name"], **client_options(config),
        ))
    return SQLiteTaskStore(uri, config["collection_name"])
