# tests/conftest.py
"""In-memory stand-ins for the LeoAuth DynamoDB tables."""
import copy
import threading
from types import SimpleNamespace

import pytest
from botocore.exceptions import ClientError


def _validation_error(message):
    return ClientError({"Error": {"Code": "ValidationException", "Message": message}}, "UpdateItem")


class FakeTable:
    """
    Just enough of a boto3 Table for the propagator: point get/put, the two
    update expressions it issues, paginated index query and scan.
    """

    def __init__(self, hash_key, range_key=None, indexes=None, page_size=None):
        self.hash_key = hash_key
        self.range_key = range_key
        self.indexes = indexes or {}
        self.page_size = page_size
        self.items = {}
        self.calls = []
        self._lock = threading.Lock()

    def _key(self, key):
        if self.range_key:
            return (key[self.hash_key], key[self.range_key])
        return (key[self.hash_key],)

    def _key_of(self, item):
        return {k: item[k] for k in (self.hash_key, self.range_key) if k}

    def seed(self, *items):
        for item in items:
            self.items[self._key(item)] = copy.deepcopy(item)

    def get(self, *key_values):
        item = self.items.get(tuple(key_values))
        return copy.deepcopy(item)

    def get_item(self, Key, ConsistentRead=False):
        self.calls.append(("get_item", Key))
        item = self.items.get(self._key(Key))
        return {"Item": copy.deepcopy(item)} if item is not None else {}

    def put_item(self, Item):
        self.calls.append(("put_item", Item))
        with self._lock:
            self.items[self._key(Item)] = copy.deepcopy(Item)
        return {}

    def update_item(self, Key, UpdateExpression, ExpressionAttributeNames, ExpressionAttributeValues):
        self.calls.append(("update_item", Key, UpdateExpression))
        names = ExpressionAttributeNames
        with self._lock:
            if UpdateExpression == "SET #policies = if_not_exists(#policies, :policies)":
                item = self.items.setdefault(self._key(Key), dict(Key))
                item.setdefault(names["#policies"], copy.deepcopy(ExpressionAttributeValues[":policies"]))
            elif UpdateExpression == "SET #policies.#policy = :statements":
                item = self.items.get(self._key(Key))
                if item is None or not isinstance(item.get(names["#policies"]), dict):
                    raise _validation_error("The document path provided in the update expression is invalid for update")
                item[names["#policies"]][names["#policy"]] = copy.deepcopy(ExpressionAttributeValues[":statements"])
            else:
                raise NotImplementedError(UpdateExpression)
        return {}

    def _page(self, rows, sort_key, ExclusiveStartKey):
        rows = sorted(rows, key=sort_key)
        start = 0
        if ExclusiveStartKey:
            start = next(i for i, row in enumerate(rows) if self._key_of(row) == self._key_of(ExclusiveStartKey)) + 1
        end = len(rows) if self.page_size is None else start + self.page_size
        page = {"Items": [copy.deepcopy(r) for r in rows[start:end]]}
        if end < len(rows):
            page["LastEvaluatedKey"] = self._key_of(rows[end - 1])
        return page

    def query(self, IndexName, KeyConditionExpression, ProjectionExpression=None,
              ExpressionAttributeNames=None, ExclusiveStartKey=None):
        self.calls.append(("query", IndexName))
        hash_key, range_key = self.indexes[IndexName]
        condition_key, value = KeyConditionExpression.get_expression()["values"]
        assert condition_key.name == hash_key
        with self._lock:
            rows = [item for item in self.items.values() if item.get(hash_key) == value]
        page = self._page(rows, lambda r: r.get(range_key), ExclusiveStartKey)
        if ProjectionExpression:
            names = ExpressionAttributeNames or {}
            attrs = [names.get(a.strip(), a.strip()) for a in ProjectionExpression.split(",")]
            attrs += [k for k in (self.hash_key, self.range_key, hash_key, range_key) if k]
            page["Items"] = [{a: r[a] for a in attrs if a in r} for r in page["Items"]]
        return page

    def scan(self, ExclusiveStartKey=None):
        self.calls.append(("scan",))
        with self._lock:
            rows = list(self.items.values())
        return self._page(rows, lambda r: r[self.hash_key], ExclusiveStartKey)

    def writes(self):
        return [c for c in self.calls if c[0] in ("put_item", "update_item")]


@pytest.fixture
def tables():
    return SimpleNamespace(
        auth=FakeTable("identity"),
        identity=FakeTable("identity", "policy", indexes={"policy-identity-id": ("policy", "identity")}),
        policy=FakeTable("name"),
    )
