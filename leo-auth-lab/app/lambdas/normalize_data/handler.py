# app/lambdas/normalize_data/handler.py
"""
Policy propagator for the LeoAuth identity cache.

Consumes DynamoDB stream records from the policy table (NEW_IMAGE) and the
identity/policy assignment table (KEYS_ONLY) and keeps the LeoAuth table,
keyed by identity, holding the statements of every policy assigned to it.

Every write is an overwrite, so a redelivered batch converges to the same
state.
"""
import json
import logging
import os
import threading
from collections import OrderedDict
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Union

import boto3
from boto3.dynamodb.conditions import Key
from boto3.dynamodb.types import TypeDeserializer

logger = logging.getLogger()
logger.setLevel(logging.INFO)

DEFAULT_POLICY_INDEX = "policy-identity-id"
DEFAULT_MAX_WORKERS = 4

# "assigned, but the policy does not exist"
EMPTY_STATEMENTS = ""

APPLIED = "applied"

ENSURE_POLICIES_EXPRESSION = "SET #policies = if_not_exists(#policies, :policies)"
SET_POLICY_EXPRESSION = "SET #policies.#policy = :statements"

_deserializer = TypeDeserializer()


class ConfigError(ValueError):
    pass


class MalformedEventError(ValueError):
    pass


class ChangeKind(str, Enum):
    INSERT = "INSERT"
    MODIFY = "MODIFY"
    REMOVE = "REMOVE"


@dataclass(frozen=True)
class PropagatorConfig:
    auth_table: str
    identity_table: str
    policy_table: str
    policy_index: str = DEFAULT_POLICY_INDEX
    max_workers: int = DEFAULT_MAX_WORKERS
    lowercase_fanout_keys: bool = False

    @classmethod
    def from_env(cls, environ=None) -> "PropagatorConfig":
        """
        Build the config from the Lambda environment.

        Explicit AUTH_TABLE / IDENTITY_TABLE / POLICY_TABLE win over the
        platform's ``Resources`` JSON blob.
        """
        environ = os.environ if environ is None else environ
        try:
            resources = json.loads(environ.get("Resources") or "{}")
        except ValueError as e:
            raise ConfigError(f"Resources is not valid JSON: {e}")

        def table(var, resource_key):
            name = environ.get(var) or resources.get(resource_key)
            if not name:
                raise ConfigError(f"{var} is not configured")
            return name

        try:
            max_workers = int(environ.get("MAX_WORKERS", DEFAULT_MAX_WORKERS))
        except ValueError:
            raise ConfigError("MAX_WORKERS must be an integer")
        if max_workers < 1:
            raise ConfigError("MAX_WORKERS must be at least 1")

        return cls(
            auth_table=table("AUTH_TABLE", "LeoAuth"),
            identity_table=table("IDENTITY_TABLE", "LeoAuthIdentity"),
            policy_table=table("POLICY_TABLE", "LeoAuthPolicy"),
            policy_index=environ.get("POLICY_INDEX") or DEFAULT_POLICY_INDEX,
            max_workers=max_workers,
            lowercase_fanout_keys=environ.get("LOWERCASE_FANOUT_KEYS", "").lower() in ("1", "true", "yes"),
        )


@dataclass(frozen=True)
class PolicyChange:
    kind: ChangeKind
    name: str
    statements: Any = EMPTY_STATEMENTS
    sequence: Optional[str] = None

    @property
    def partition(self):
        return ("policy", self.name)


@dataclass(frozen=True)
class AssignmentChange:
    kind: ChangeKind
    identity: str
    policy: str
    sequence: Optional[str] = None

    @property
    def partition(self):
        return ("identity", self.identity)


Change = Union[PolicyChange, AssignmentChange]


# ---------------------------
# Stream record decoding
# ---------------------------

def unmarshall(image: Dict[str, Any]) -> Dict[str, Any]:
    """Attribute-typed stream image -> plain dict."""
    return {k: _deserializer.deserialize(v) for k, v in image.items()}


def table_name_from_arn(arn: str) -> str:
    # arn:aws:dynamodb:<region>:<account>:table/<name>/stream/<label>
    resource = arn.split(":", 5)[-1] if arn.count(":") >= 5 else ""
    parts = resource.split("/")
    if len(parts) < 2 or parts[0] != "table" or not parts[1]:
        raise MalformedEventError(f"unrecognised eventSourceARN: {arn!r}")
    return parts[1]


def _require(mapping: Dict[str, Any], field: str, where: str):
    value = mapping.get(field)
    if value is None or value == "":
        raise MalformedEventError(f"{where} is missing {field!r}")
    return value


def decode_record(record: Dict[str, Any], config: PropagatorConfig) -> Change:
    """
    Turn one stream record into a PolicyChange or AssignmentChange.

    The source table is taken from eventSourceARN and must equal one of the
    configured table names exactly.
    """
    arn = record.get("eventSourceARN")
    if not arn:
        raise MalformedEventError("record has no eventSourceARN")
    source = table_name_from_arn(arn)

    try:
        kind = ChangeKind(record.get("eventName"))
    except ValueError:
        raise MalformedEventError(f"unsupported eventName: {record.get('eventName')!r}")

    stream = record.get("dynamodb")
    if not isinstance(stream, dict):
        raise MalformedEventError("record has no dynamodb payload")
    sequence = stream.get("SequenceNumber")

    if source == config.policy_table:
        if kind is ChangeKind.REMOVE:
            keys = unmarshall(_require(stream, "Keys", "policy REMOVE record"))
            return PolicyChange(kind, _require(keys, "name", "policy keys"), sequence=sequence)
        image = unmarshall(_require(stream, "NewImage", "policy record"))
        return PolicyChange(
            kind,
            _require(image, "name", "policy image"),
            image.get("statements", EMPTY_STATEMENTS),
            sequence,
        )

    if source == config.identity_table:
        keys = unmarshall(_require(stream, "Keys", "assignment record"))
        return AssignmentChange(
            kind,
            _require(keys, "identity", "assignment keys"),
            _require(keys, "policy", "assignment keys"),
            sequence,
        )

    raise MalformedEventError(f"record from unexpected table {source!r}")


def plan_batch(changes: List[Change]) -> List[List[List[Change]]]:
    """
    Split a batch into stages that run one after another.

    Each policy change is a stage of its own, since its fan-out touches any
    number of identities. The assignment changes between two policy changes
    form one stage, grouped by identity with source order kept in a group.
    """
    stages: List[List[List[Change]]] = []
    run: "OrderedDict[Any, List[Change]]" = OrderedDict()
    for change in changes:
        if isinstance(change, PolicyChange):
            if run:
                stages.append(list(run.values()))
                run = OrderedDict()
            stages.append([[change]])
        else:
            run.setdefault(change.partition, []).append(change)
    if run:
        stages.append(list(run.values()))
    return stages


def thread_tables(config: PropagatorConfig, session_factory=None):
    """
    Return a callable giving the calling thread its own (auth, identity, policy)
    tables. boto3 resources must not be shared between threads.
    """
    local = threading.local()

    def tables():
        if getattr(local, "tables", None) is None:
            session = (session_factory or boto3.session.Session)()
            dynamodb = session.resource("dynamodb")
            local.tables = (
                dynamodb.Table(config.auth_table),
                dynamodb.Table(config.identity_table),
                dynamodb.Table(config.policy_table),
            )
        return local.tables

    return tables


# ---------------------------
# Propagator
# ---------------------------

class PolicyPropagator:
    """Applies policy and assignment changes to the identity cache."""

    def __init__(self, config: PropagatorConfig, auth_table, identity_table, policy_table,
                 worker_tables=None):
        self.config = config
        self.auth_table = auth_table
        self.identity_table = identity_table
        self.policy_table = policy_table
        self._worker_tables = worker_tables
        self._executor = None

    @classmethod
    def from_config(cls, config: PropagatorConfig, session_factory=None) -> "PolicyPropagator":
        tables = thread_tables(config, session_factory)
        return cls(config, *tables(), worker_tables=tables)

    def for_worker(self) -> "PolicyPropagator":
        """A propagator bound to the current thread's tables."""
        if self._worker_tables is None:
            return self
        return PolicyPropagator(self.config, *self._worker_tables())

    def _pool(self) -> ThreadPoolExecutor:
        # Kept for the container's lifetime so worker threads keep their tables.
        if self._executor is None:
            self._executor = ThreadPoolExecutor(
                max_workers=self.config.max_workers, thread_name_prefix="propagator"
            )
        return self._executor

    def process(self, change: Change) -> str:
        if isinstance(change, PolicyChange):
            if change.kind is ChangeKind.REMOVE:
                # No cache cleanup on policy deletion; assignments keep the last statements.
                logger.warning("Policy %s removed; identity cache left unchanged", change.name)
            else:
                self.fan_out(change.name, change.statements)
        elif isinstance(change, AssignmentChange):
            self.apply_assignment(change)
        else:
            raise TypeError(f"unsupported change: {change!r}")
        return APPLIED

    def apply_group(self, group: List[Change]) -> int:
        worker = self.for_worker()
        for change in group:
            worker.process(change)
        return len(group)

    def process_batch(self, changes: List[Change]) -> int:
        """
        Apply a batch stage by stage (see plan_batch).

        Groups inside a stage run in parallel. Every group of a failing stage
        is allowed to finish, then the first failure is raised and later
        stages are not started; redelivery re-applies the whole batch.
        """
        applied = 0
        for stage in plan_batch(changes):
            if len(stage) == 1:
                applied += self.apply_group(stage[0])
                continue

            futures = [self._pool().submit(self.apply_group, group) for group in stage]
            wait(futures)
            errors = [f.exception() for f in futures]
            failures = [e for e in errors if e is not None]
            if failures:
                logger.error("%d of %d change groups failed", len(failures), len(futures))
                raise failures[0]
            applied += sum(f.result() for f in futures)
        return applied

    # -- policy branch --

    def assigned_identities(self, policy_name: str) -> List[str]:
        """Every assignment row for a policy, via the reverse index, all pages."""
        identities = []
        kwargs = {
            "IndexName": self.config.policy_index,
            "KeyConditionExpression": Key("policy").eq(policy_name),
            "ProjectionExpression": "#identity",
            "ExpressionAttributeNames": {"#identity": "identity"},
        }
        while True:
            page = self.identity_table.query(**kwargs)
            identities.extend(item["identity"] for item in page.get("Items", []))
            last_key = page.get("LastEvaluatedKey")
            if not last_key:
                return identities
            kwargs["ExclusiveStartKey"] = last_key

    def fan_out_key(self, policy_name: str) -> str:
        return policy_name.lower() if self.config.lowercase_fanout_keys else policy_name

    def fan_out(self, policy_name: str, statements: Any) -> int:
        assigned = self.assigned_identities(policy_name)
        distinct = list(OrderedDict.fromkeys(assigned))
        logger.info("Policy %s: updating %d identities", policy_name, len(distinct))

        key = self.fan_out_key(policy_name)
        for identity in distinct:
            self.auth_table.update_item(
                Key={"identity": identity},
                UpdateExpression=ENSURE_POLICIES_EXPRESSION,
                ExpressionAttributeNames={"#policies": "policies"},
                ExpressionAttributeValues={":policies": {}},
            )
        for identity in assigned:
            logger.debug("Identity %s <- policy %s", identity, key)
            self.auth_table.update_item(
                Key={"identity": identity},
                UpdateExpression=SET_POLICY_EXPRESSION,
                ExpressionAttributeNames={"#policies": "policies", "#policy": key},
                ExpressionAttributeValues={":statements": statements},
            )
        return len(distinct)

    # -- assignment branch --

    def load_identity(self, identity: str) -> Dict[str, Any]:
        item = self.auth_table.get_item(Key={"identity": identity}, ConsistentRead=True).get("Item")
        if not item:
            return {"identity": identity, "policies": {}}
        if not isinstance(item.get("policies"), dict):
            item["policies"] = {}
        return item

    def lookup_statements(self, policy_name: str) -> Any:
        item = self.policy_table.get_item(Key={"name": policy_name}).get("Item")
        if not item:
            logger.info("Policy %s not found; writing empty placeholder", policy_name)
            return EMPTY_STATEMENTS
        return item.get("statements", EMPTY_STATEMENTS)

    def apply_assignment(self, change: AssignmentChange) -> Dict[str, Any]:
        entry = self.load_identity(change.identity)
        key = change.policy.lower()
        if change.kind is ChangeKind.REMOVE:
            # Fan-out may have written the stored casing; drop every spelling.
            for existing in [k for k in entry["policies"] if k.lower() == key]:
                del entry["policies"][existing]
        else:
            entry["policies"][key] = self.lookup_statements(change.policy)
        logger.info("Identity %s: %s %s", change.identity, change.kind.value, key)
        self.save_identity(entry)
        return entry

    def save_identity(self, entry: Dict[str, Any]) -> None:
        logger.debug("Saving identity: %s", entry["identity"])
        self.auth_table.put_item(Item=entry)

    # -- full re-sync --

    def resync(self, policy_name: str) -> int:
        item = self.policy_table.get_item(Key={"name": policy_name}).get("Item")
        if not item:
            logger.warning("Policy %s does not exist; nothing to re-sync", policy_name)
            return 0
        return self.fan_out(item["name"], item.get("statements", EMPTY_STATEMENTS))

    def resync_all(self) -> int:
        count = 0
        kwargs: Dict[str, Any] = {}
        while True:
            page = self.policy_table.scan(**kwargs)
            for item in page.get("Items", []):
                self.fan_out(item["name"], item.get("statements", EMPTY_STATEMENTS))
                count += 1
            last_key = page.get("LastEvaluatedKey")
            if not last_key:
                return count
            kwargs["ExclusiveStartKey"] = last_key


# ---------------------------
# Lambda entry point
# ---------------------------

_propagator = None


def get_propagator() -> PolicyPropagator:
    global _propagator
    if _propagator is None:
        _propagator = PolicyPropagator.from_config(PropagatorConfig.from_env())
    return _propagator


def lambda_handler(event, context):
    logger.info("Received event: %s", json.dumps(event, default=str))

    records = (event or {}).get("Records") or []
    if not records:
        return "No records found"

    propagator = get_propagator()
    try:
        changes = [decode_record(record, propagator.config) for record in records]
        applied = propagator.process_batch(changes)
    except Exception:
        logger.exception("Failed to apply %d stream records", len(records))
        raise

    logger.info("Applied %d changes", applied)
    return "Success"
