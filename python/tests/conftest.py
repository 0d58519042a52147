"""
Shared fixtures: in-memory stand-ins for the boto3 DynamoDB client and the
motor client, plus factories for adapters wired to them.
"""

import copy
import itertools
import re
from types import SimpleNamespace

import pytest
from botocore.exceptions import ClientError
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from polystore.config.database_config import DynamoDBConfig, MongoDBConfig
from polystore.db.dynamodb_adapter import DynamoDBConnectionManager, DynamoDBDataAccessClient
from polystore.db.mongodb_adapter import MongoDBConnectionManager, MongoDBDataAccessClient
from polystore.services.metrics import MetricsCollector
from polystore.services.resilience import ResilienceManager, RetryConfig


async def no_sleep(_delay):
    return None


def client_error(code, message="boom", operation="Operation", **extra):
    response = {"Error": {"Code": code, "Message": message}}
    response.update(extra)
    return ClientError(response, operation)


# ---------------------------------------------------------------------------
# DynamoDB fake
# ---------------------------------------------------------------------------


def _split_top_level(text):
    parts, depth, current = [], 0, ""
    for ch in text:
        if ch == "(":
            depth += 1
        elif ch == ")":
            depth -= 1
        if ch == "," and depth == 0:
            parts.append(current.strip())
            current = ""
        else:
            current += ch
    if current.strip():
        parts.append(current.strip())
    return parts


class FakeDynamoClient:
    """Enough of the resource-level DynamoDB client for adapter tests."""

    def __init__(self, page_size=2):
        self.tables = {}
        self.calls = []
        self.page_size = page_size
        self.fail_next = {}
        self.unprocessed_once = False

    def _record(self, name, kwargs):
        self.calls.append((name, kwargs))
        error = self.fail_next.pop(name, None)
        if error is not None:
            raise error

    def call_names(self):
        return [name for name, _ in self.calls]

    def _table(self, name):
        return self.tables.setdefault(name, {})

    @staticmethod
    def _key(key):
        return (key["pk"], key["sk"])

    def _check(self, item, expression, names, values):
        if not expression:
            return
        names = names or {}
        values = values or {}
        ok = True
        for clause in re.split(r"\) AND \(|\s+AND\s+", expression.strip("()")):
            clause = clause.strip("()")
            match = re.fullmatch(r"attribute_(not_)?exists\((#?\w+)", clause) or re.fullmatch(
                r"attribute_(not_)?exists\((#?\w+)\)", clause
            )
            if match:
                field = names.get(match.group(2), match.group(2))
                present = item is not None and field in item
                ok = ok and (not present if match.group(1) else present)
                continue
            match = re.fullmatch(r"(#\w+) (=|<>|<=|>=|<|>) (:\w+)", clause)
            if match:
                field = names[match.group(1)]
                current = None if item is None else item.get(field)
                expected = values[match.group(3)]
                op = match.group(2)
                if current is None:
                    ok = ok and op == "<>"
                elif op == "=":
                    ok = ok and current == expected
                elif op == "<>":
                    ok = ok and current != expected
                elif op == "<":
                    ok = ok and current < expected
                elif op == "<=":
                    ok = ok and current <= expected
                elif op == ">":
                    ok = ok and current > expected
                else:
                    ok = ok and current >= expected
        if not ok:
            raise client_error("ConditionalCheckFailedException", "The conditional request failed")

    def get_item(self, TableName, Key, ConsistentRead=False, **kwargs):
        self._record("get_item", dict(TableName=TableName, Key=Key, ConsistentRead=ConsistentRead, **kwargs))
        item = self._table(TableName).get(self._key(Key))
        return {"Item": copy.deepcopy(item)} if item is not None else {}

    def put_item(self, TableName, Item, ConditionExpression=None, ExpressionAttributeNames=None,
                 ExpressionAttributeValues=None):
        self._record("put_item", dict(TableName=TableName, Item=Item, ConditionExpression=ConditionExpression,
                                      ExpressionAttributeNames=ExpressionAttributeNames,
                                      ExpressionAttributeValues=ExpressionAttributeValues))
        table = self._table(TableName)
        key = self._key(Item)
        self._check(table.get(key), ConditionExpression, ExpressionAttributeNames, ExpressionAttributeValues)
        table[key] = copy.deepcopy(Item)
        return {}

    def _apply_update(self, item, expression, names, values):
        for keyword, body in re.findall(r"(SET|ADD|DELETE|REMOVE) (.*?)(?= (?:SET|ADD|DELETE|REMOVE) |$)", expression):
            for part in _split_top_level(body):
                if keyword == "SET":
                    target, rhs = [p.strip() for p in part.split("=", 1)]
                    field = names[target]
                    if rhs.startswith("list_append("):
                        placeholder = re.findall(r":v\d+", rhs)[-1]
                        item[field] = list(item.get(field, [])) + list(values[placeholder])
                    else:
                        item[field] = copy.deepcopy(values[rhs])
                elif keyword == "ADD":
                    target, placeholder = part.split()
                    field = names[target]
                    delta = values[placeholder]
                    if isinstance(delta, set):
                        item[field] = set(item.get(field, set())) | delta
                    else:
                        item[field] = item.get(field, 0) + delta
                elif keyword == "DELETE":
                    target, placeholder = part.split()
                    field = names[target]
                    item[field] = set(item.get(field, set())) - set(values[placeholder])
                else:
                    item.pop(names.get(part, part), None)

    def update_item(self, TableName, Key, UpdateExpression, ExpressionAttributeNames=None,
                    ExpressionAttributeValues=None, ReturnValues="NONE", ConditionExpression=None):
        self._record("update_item", dict(TableName=TableName, Key=Key, UpdateExpression=UpdateExpression,
                                         ExpressionAttributeNames=ExpressionAttributeNames,
                                         ExpressionAttributeValues=ExpressionAttributeValues,
                                         ReturnValues=ReturnValues, ConditionExpression=ConditionExpression))
        table = self._table(TableName)
        key = self._key(Key)
        existing = table.get(key)
        self._check(existing, ConditionExpression, ExpressionAttributeNames, ExpressionAttributeValues)
        before = copy.deepcopy(existing)
        item = copy.deepcopy(existing) if existing is not None else dict(Key)
        self._apply_update(item, UpdateExpression, ExpressionAttributeNames or {}, ExpressionAttributeValues or {})
        table[key] = item
        if ReturnValues in ("ALL_NEW", "UPDATED_NEW"):
            return {"Attributes": copy.deepcopy(item)}
        if ReturnValues in ("ALL_OLD", "UPDATED_OLD") and before is not None:
            return {"Attributes": before}
        return {}

    def delete_item(self, TableName, Key, ConditionExpression=None, ExpressionAttributeNames=None,
                    ExpressionAttributeValues=None, ReturnValues="NONE"):
        self._record("delete_item", dict(TableName=TableName, Key=Key, ConditionExpression=ConditionExpression))
        table = self._table(TableName)
        key = self._key(Key)
        self._check(table.get(key), ConditionExpression, ExpressionAttributeNames, ExpressionAttributeValues)
        removed = table.pop(key, None)
        if ReturnValues == "ALL_OLD" and removed is not None:
            return {"Attributes": removed}
        return {}

    def _page(self, items, limit, start_key):
        if start_key is not None:
            marker = self._key(start_key)
            items = [i for i in items if self._key(i) > marker]
        size = limit or self.page_size
        page = items[:size]
        response = {"Items": copy.deepcopy(page), "Count": len(page)}
        if len(items) > size:
            response["LastEvaluatedKey"] = {"pk": page[-1]["pk"], "sk": page[-1]["sk"]}
        return response

    def query(self, TableName, KeyConditionExpression, ExpressionAttributeNames=None,
              ExpressionAttributeValues=None, Limit=None, ExclusiveStartKey=None, ScanIndexForward=True, **kwargs):
        self._record("query", dict(TableName=TableName, KeyConditionExpression=KeyConditionExpression,
                                   ExpressionAttributeNames=ExpressionAttributeNames,
                                   ExpressionAttributeValues=ExpressionAttributeValues, Limit=Limit,
                                   ExclusiveStartKey=ExclusiveStartKey, ScanIndexForward=ScanIndexForward, **kwargs))
        names = ExpressionAttributeNames or {}
        values = ExpressionAttributeValues or {}
        items = sorted(self._table(TableName).values(), key=self._key)

        match = re.fullmatch(r"begins_with\((#\w+), (:\w+)\)", KeyConditionExpression)
        if match:
            field, prefix = names[match.group(1)], values[match.group(2)]
            items = [i for i in items if str(i.get(field, "")).startswith(prefix)]
        match = re.fullmatch(r"(#\w+) = (:\w+)", KeyConditionExpression)
        if match:
            field, expected = names[match.group(1)], values[match.group(2)]
            items = [i for i in items if i.get(field) == expected]
        match = re.fullmatch(r"(#\w+) BETWEEN (:\w+) AND (:\w+)", KeyConditionExpression)
        if match:
            field, low, high = names[match.group(1)], values[match.group(2)], values[match.group(3)]
            items = [i for i in items if field in i and low <= i[field] <= high]

        return self._page(items, Limit, ExclusiveStartKey)

    def scan(self, TableName, Limit=None, ExclusiveStartKey=None, **kwargs):
        self._record("scan", dict(TableName=TableName, Limit=Limit, ExclusiveStartKey=ExclusiveStartKey, **kwargs))
        items = sorted(self._table(TableName).values(), key=self._key)
        return self._page(items, Limit, ExclusiveStartKey)

    def batch_get_item(self, RequestItems):
        self._record("batch_get_item", dict(RequestItems=RequestItems))
        responses, unprocessed = {}, {}
        for table_name, request in RequestItems.items():
            keys = list(request["Keys"])
            if self.unprocessed_once and len(keys) > 1:
                self.unprocessed_once = False
                unprocessed[table_name] = dict(request, Keys=keys[1:])
                keys = keys[:1]
            table = self._table(table_name)
            responses[table_name] = [
                copy.deepcopy(table[self._key(k)]) for k in keys if self._key(k) in table
            ]
        return {"Responses": responses, "UnprocessedKeys": unprocessed}

    def transact_write_items(self, TransactItems):
        self._record("transact_write_items", dict(TransactItems=TransactItems))
        snapshot = copy.deepcopy(self.tables)
        try:
            for entry in TransactItems:
                (kind, params), = entry.items()
                table = self._table(params["TableName"])
                names = params.get("ExpressionAttributeNames")
                values = params.get("ExpressionAttributeValues")
                if kind == "Put":
                    key = self._key(params["Item"])
                    self._check(table.get(key), params.get("ConditionExpression"), names, values)
                    table[key] = copy.deepcopy(params["Item"])
                elif kind == "Update":
                    key = self._key(params["Key"])
                    self._check(table.get(key), params.get("ConditionExpression"), names, values)
                    item = copy.deepcopy(table.get(key)) or dict(params["Key"])
                    self._apply_update(item, params["UpdateExpression"], names or {}, values or {})
                    table[key] = item
                elif kind == "Delete":
                    key = self._key(params["Key"])
                    self._check(table.get(key), params.get("ConditionExpression"), names, values)
                    table.pop(key, None)
                elif kind == "ConditionCheck":
                    key = self._key(params["Key"])
                    self._check(table.get(key), params["ConditionExpression"], names, values)
        except ClientError:
            self.tables = snapshot
            raise client_error(
                "TransactionCanceledException",
                "Transaction cancelled",
                CancellationReasons=[{"Code": "ConditionalCheckFailed"}],
            )
        return {}

    def transact_get_items(self, TransactItems):
        self._record("transact_get_items", dict(TransactItems=TransactItems))
        responses = []
        for entry in TransactItems:
            params = entry["Get"]
            item = self._table(params["TableName"]).get(self._key(params["Key"]))
            responses.append({"Item": copy.deepcopy(item)} if item is not None else {})
        return {"Responses": responses}

    def describe_table(self, TableName):
        self._record("describe_table", dict(TableName=TableName))
        return {"Table": {"TableName": TableName, "ItemCount": len(self._table(TableName))}}


# ---------------------------------------------------------------------------
# MongoDB fake
# ---------------------------------------------------------------------------


_MISSING = object()


def _get_field(doc, field):
    return doc.get(field, _MISSING)


def _matches_operator(value, op, expected, options=""):
    if op == "$ne":
        return value is _MISSING or value != expected
    if op == "$exists":
        return (value is not _MISSING) == expected
    if value is _MISSING:
        return False
    if op == "$lt":
        return value < expected
    if op == "$lte":
        return value <= expected
    if op == "$gt":
        return value > expected
    if op == "$gte":
        return value >= expected
    if op == "$in":
        return value in expected
    if op == "$regex":
        flags = re.IGNORECASE if "i" in options else 0
        return isinstance(value, str) and re.search(expected, value, flags) is not None
    raise AssertionError(f"unsupported operator {op}")


def matches(doc, query):
    for field, condition in query.items():
        if field == "$and":
            if not all(matches(doc, q) for q in condition):
                return False
            continue
        if field == "$or":
            if not any(matches(doc, q) for q in condition):
                return False
            continue
        value = _get_field(doc, field)
        if isinstance(condition, dict) and condition and all(k.startswith("$") for k in condition):
            options = condition.get("$options", "")
            for op, expected in condition.items():
                if op == "$options":
                    continue
                if not _matches_operator(value, op, expected, options):
                    return False
        elif value is _MISSING or value != condition:
            return False
    return True


def _equalities(query):
    found = {}
    for field, condition in query.items():
        if field == "$and":
            for sub in condition:
                found.update(_equalities(sub))
        elif not field.startswith("$") and not isinstance(condition, dict):
            found[field] = condition
    return found


class FakeCursor:
    def __init__(self, docs):
        self._docs = docs
        self._skip = 0
        self._limit = 0

    def sort(self, keys):
        for field, direction in reversed(keys):
            self._docs.sort(key=lambda d: d.get(field), reverse=direction < 0)
        return self

    def skip(self, n):
        self._skip = n
        return self

    def limit(self, n):
        self._limit = n
        return self

    async def to_list(self, length=None):
        docs = self._docs[self._skip:]
        if self._limit:
            docs = docs[: self._limit]
        return copy.deepcopy(docs)


class FakeCollection:
    def __init__(self, store):
        self._store = store
        self.fail_on = {}
        self.calls = []

    @property
    def docs(self):
        return self._store["docs"]

    def _record(self, name, filter_=None):
        self.calls.append(name)
        trigger = self.fail_on.get(name)
        if trigger is not None:
            predicate, error = trigger
            if predicate(filter_ or {}):
                raise error

    def _find_doc(self, query):
        for doc in self.docs:
            if matches(doc, query):
                return doc
        return None

    def _project(self, doc, projection):
        if doc is None or not projection:
            return copy.deepcopy(doc)
        return {k: copy.deepcopy(v) for k, v in doc.items() if k in projection or k == "_id"}

    def _assert_unique(self, doc, ignore=None):
        if not self._store["unique"]:
            return
        for other in self.docs:
            if other is ignore:
                continue
            if other.get("pk") == doc.get("pk") and other.get("sk") == doc.get("sk"):
                raise DuplicateKeyError("E11000 duplicate key error collection", 11000)

    def _insert(self, doc):
        doc = copy.deepcopy(doc)
        doc.setdefault("_id", next(self._store["ids"]))
        self._assert_unique(doc)
        self.docs.append(doc)
        return doc

    @staticmethod
    def _apply_update(doc, update, inserting):
        for field, value in update.get("$set", {}).items():
            doc[field] = copy.deepcopy(value)
        if inserting:
            for field, value in update.get("$setOnInsert", {}).items():
                doc[field] = copy.deepcopy(value)
        for field, delta in update.get("$inc", {}).items():
            doc[field] = doc.get(field, 0) + delta
        for field, push in update.get("$push", {}).items():
            doc[field] = list(doc.get(field, [])) + list(push["$each"])
        for field, values in update.get("$pullAll", {}).items():
            doc[field] = [v for v in doc.get(field, []) if v not in values]

    async def find_one(self, filter, projection=None, session=None):
        self._record("find_one", filter)
        return self._project(self._find_doc(filter), projection)

    async def insert_one(self, document, session=None):
        self._record("insert_one", document)
        doc = self._insert(document)
        return SimpleNamespace(inserted_id=doc["_id"])

    async def replace_one(self, filter, replacement, upsert=False, session=None):
        self._record("replace_one", filter)
        existing = self._find_doc(filter)
        if existing is not None:
            new_doc = copy.deepcopy(replacement)
            new_doc["_id"] = existing["_id"]
            self._assert_unique(new_doc, ignore=existing)
            existing.clear()
            existing.update(new_doc)
            return SimpleNamespace(matched_count=1, modified_count=1, upserted_id=None)
        if upsert:
            doc = self._insert(replacement)
            return SimpleNamespace(matched_count=0, modified_count=0, upserted_id=doc["_id"])
        return SimpleNamespace(matched_count=0, modified_count=0, upserted_id=None)

    async def update_one(self, filter, update, upsert=False, session=None):
        self._record("update_one", filter)
        existing = self._find_doc(filter)
        if existing is not None:
            self._apply_update(existing, update, inserting=False)
            return SimpleNamespace(matched_count=1, modified_count=1, upserted_id=None)
        if upsert:
            doc = _equalities(filter)
            self._apply_update(doc, update, inserting=True)
            inserted = self._insert(doc)
            return SimpleNamespace(matched_count=0, modified_count=0, upserted_id=inserted["_id"])
        return SimpleNamespace(matched_count=0, modified_count=0, upserted_id=None)

    async def find_one_and_update(self, filter, update, return_document=ReturnDocument.BEFORE,
                                  upsert=False, session=None):
        self._record("find_one_and_update", filter)
        existing = self._find_doc(filter)
        if existing is None:
            if not upsert:
                return None
            doc = _equalities(filter)
            self._apply_update(doc, update, inserting=True)
            inserted = self._insert(doc)
            return copy.deepcopy(inserted) if return_document == ReturnDocument.AFTER else None
        before = copy.deepcopy(existing)
        self._apply_update(existing, update, inserting=False)
        return copy.deepcopy(existing) if return_document == ReturnDocument.AFTER else before

    async def find_one_and_delete(self, filter, session=None):
        self._record("find_one_and_delete", filter)
        existing = self._find_doc(filter)
        if existing is None:
            return None
        self.docs.remove(existing)
        return existing

    async def delete_one(self, filter, session=None):
        self._record("delete_one", filter)
        existing = self._find_doc(filter)
        if existing is None:
            return SimpleNamespace(deleted_count=0)
        self.docs.remove(existing)
        return SimpleNamespace(deleted_count=1)

    def find(self, filter=None, projection=None, session=None):
        self._record("find", filter)
        docs = [self._project(d, projection) for d in self.docs if matches(d, filter or {})]
        return FakeCursor(docs)

    async def create_index(self, keys, unique=False, **kwargs):
        self._record("create_index")
        if unique:
            self._store["unique"] = True
        return "index"


class FakeSession:
    def __init__(self, client):
        self._client = client
        self.ended = False

    async def with_transaction(self, callback):
        snapshot = {name: copy.deepcopy(store["docs"]) for name, store in self._client.stores.items()}
        try:
            return await callback(self)
        except Exception:
            for name, store in self._client.stores.items():
                # Collections first written inside the callback roll back to empty.
                store["docs"][:] = snapshot.get(name, [])
            raise

    async def end_session(self):
        self.ended = True


class FakeAdmin:
    def __init__(self, client):
        self._client = client

    async def command(self, name):
        self._client.commands.append(name)
        if self._client.ping_error is not None and name == "ping":
            raise self._client.ping_error
        if name == "hello":
            return dict(self._client.hello)
        return {"ok": 1.0}


class FakeDatabase:
    def __init__(self, client):
        self._client = client

    def __getitem__(self, name):
        return self._client.collection(name)


class FakeMotorClient:
    """In-memory stand-in for AsyncIOMotorClient."""

    def __init__(self, replica_set=True):
        self.stores = {}
        self.collections = {}
        self.commands = []
        self.sessions = []
        self.closed = False
        self.ping_error = None
        self.hello = {"isWritablePrimary": True, "setName": "rs0"} if replica_set else {"isWritablePrimary": True}
        self.admin = FakeAdmin(self)
        self._ids = itertools.count(1)

    def __getitem__(self, name):
        return FakeDatabase(self)

    def collection(self, name):
        if name not in self.collections:
            self.stores[name] = {"docs": [], "ids": self._ids, "unique": False}
            self.collections[name] = FakeCollection(self.stores[name])
        return self.collections[name]

    async def start_session(self):
        session = FakeSession(self)
        self.sessions.append(session)
        return session

    def close(self):
        self.closed = True


# ---------------------------------------------------------------------------
# Adapter factories
# ---------------------------------------------------------------------------


def fast_resilience(provider):
    return ResilienceManager(provider, RetryConfig(base_delay=0.0, jitter=False), sleep=no_sleep)


def build_dynamo_adapter(fake, consistent_read=False):
    config = DynamoDBConfig(primary_table="primary", data_table="data", consistent_read=consistent_read)
    connection = DynamoDBConnectionManager(
        config,
        MetricsCollector("dynamodb"),
        fast_resilience("dynamodb"),
        client_factory=lambda _config: fake,
    )
    return DynamoDBDataAccessClient(connection)


def build_mongo_adapter(fake):
    config = MongoDBConfig(connection_string="mongodb://localhost:27017", database="app")
    connection = MongoDBConnectionManager(
        config,
        MetricsCollector("mongodb"),
        fast_resilience("mongodb"),
        client_factory=lambda _config: fake,
    )
    return MongoDBDataAccessClient(connection)


@pytest.fixture
def fake_dynamo():
    return FakeDynamoClient()


@pytest.fixture
async def dynamo(fake_dynamo):
    adapter = build_dynamo_adapter(fake_dynamo)
    await adapter.connect()
    fake_dynamo.calls.clear()
    return adapter


@pytest.fixture
def fake_mongo():
    return FakeMotorClient()


@pytest.fixture
async def mongo(fake_mongo):
    adapter = build_mongo_adapter(fake_mongo)
    await adapter.connect()
    return adapter


@pytest.fixture
async def standalone_mongo():
    fake = FakeMotorClient(replica_set=False)
    adapter = build_mongo_adapter(fake)
    await adapter.connect()
    return adapter


@pytest.fixture
def primary_docs(fake_mongo):
    return fake_mongo.collection("primary_data")
