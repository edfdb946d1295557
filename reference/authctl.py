"""
LeoAuth operator toolkit
========================
A small CLI around the normalize_data propagator for:
  1. Rendering DynamoDB stream events from a YAML/JSON change description
  2. Replaying a stream event file through the propagator
  3. Re-syncing the identity cache for one or every policy
  4. Inspecting an identity's cache entry

Table names come from the same environment as the Lambdas
(AUTH_TABLE / IDENTITY_TABLE / POLICY_TABLE, or the Resources JSON blob).

Run it from a source checkout: it loads the propagator straight from
leo-auth-lab/app/lambdas/normalize_data/handler.py. Set NORMALIZE_DATA_HANDLER
to point at another copy of that file.

Example usage:
  # Describe a change and render it as a stream event
  python reference/authctl.py event change.yaml event.json

  # Run it through the propagator against the configured tables
  python reference/authctl.py apply event.json

  # Rebuild the cache entries for one policy, or all of them
  python reference/authctl.py resync Read
  python reference/authctl.py resync --all

  # Look at what an identity resolves to
  python reference/authctl.py show u1

A change description is one mapping or a list of them:
  - table: policy
    kind: modify
    name: Read
    statements: {Effect: Allow, Action: "s3:GetObject"}
  - table: assignment
    kind: insert
    identity: u1
    policy: Read
"""
from __future__ import annotations

import argparse
import importlib.util
import json
import os
import sys
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, List

import yaml
from boto3.dynamodb.types import TypeSerializer

HANDLER_PATH = (
    Path(__file__).resolve().parent.parent
    / "leo-auth-lab" / "app" / "lambdas" / "normalize_data" / "handler.py"
)
DEFAULT_REGION = "us-east-1"
DEFAULT_ACCOUNT = "000000000000"

_serializer = TypeSerializer()


def handler_path() -> Path:
    override = os.environ.get("NORMALIZE_DATA_HANDLER")
    return Path(override) if override else HANDLER_PATH


def load_normalizer():
    """Load the normalize_data handler module from the Lambda source tree."""
    path = handler_path()
    if not path.is_file():
        raise FileNotFoundError(
            f"normalize_data handler not found at {path}; run authctl from a source "
            "checkout or set NORMALIZE_DATA_HANDLER"
        )
    spec = importlib.util.spec_from_file_location("normalize_data_handler", path)
    module = importlib.util.module_from_spec(spec)
    sys.modules[spec.name] = module
    spec.loader.exec_module(module)
    return module


# ---------------------------
# Stream event rendering
# ---------------------------

def marshall(item: Dict[str, Any]) -> Dict[str, Any]:
    # TypeSerializer refuses floats; route numbers through Decimal.
    item = json.loads(json.dumps(item), parse_float=Decimal)
    return {k: _serializer.serialize(v) for k, v in item.items()}


def stream_arn(table: str, region: str = DEFAULT_REGION, account: str = DEFAULT_ACCOUNT) -> str:
    label = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.000")
    return f"arn:aws:dynamodb:{region}:{account}:table/{table}/stream/{label}"


def build_record(change: Dict[str, Any], config, sequence: int) -> Dict[str, Any]:
    table = str(change.get("table", "")).lower()
    kind = str(change.get("kind", "modify")).upper()
    if kind not in ("INSERT", "MODIFY", "REMOVE"):
        raise ValueError(f"Unknown change kind: {change.get('kind')!r}")

    if table == "policy":
        if "name" not in change:
            raise ValueError("Policy change needs a 'name'")
        keys = {"name": change["name"]}
        payload = {"Keys": marshall(keys)}
        if kind != "REMOVE":
            image = dict(keys)
            if "statements" in change:
                image["statements"] = change["statements"]
            payload["NewImage"] = marshall(image)
        source = config.policy_table
    elif table == "assignment":
        missing = {"identity", "policy"} - change.keys()
        if missing:
            raise ValueError(f"Assignment change needs: {', '.join(sorted(missing))}")
        payload = {"Keys": marshall({"identity": change["identity"], "policy": change["policy"]})}
        source = config.identity_table
    else:
        raise ValueError(f"Unknown table: {change.get('table')!r} (expected policy or assignment)")

    payload["SequenceNumber"] = str(sequence)
    payload["StreamViewType"] = "NEW_IMAGE" if table == "policy" else "KEYS_ONLY"
    return {
        "eventID": uuid.uuid4().hex,
        "eventName": kind,
        "eventSource": "aws:dynamodb",
        "eventSourceARN": stream_arn(source),
        "dynamodb": payload,
    }


def build_event(changes: List[Dict[str, Any]], config) -> Dict[str, Any]:
    return {"Records": [build_record(c, config, i + 1) for i, c in enumerate(changes)]}


def read_document(path: str):
    with open(path, "r", encoding="utf-8") as f:
        if path.endswith((".yaml", ".yml")):
            return yaml.safe_load(f)
        return json.load(f)


# ---------------------------
# CLI Interface
# ---------------------------

def cli(argv=None):
    parser = argparse.ArgumentParser(description="LeoAuth identity cache toolkit")
    sub = parser.add_subparsers(dest="command", required=True)

    e = sub.add_parser("event", help="Render a change description (YAML/JSON) as a stream event")
    e.add_argument("input", help="Path to change description")
    e.add_argument("output", help="Path to output stream event JSON")

    a = sub.add_parser("apply", help="Run a stream event file through the propagator")
    a.add_argument("input", help="Path to stream event JSON")

    r = sub.add_parser("resync", help="Rewrite cache entries from the policy table")
    r.add_argument("name", nargs="?", help="Policy name")
    r.add_argument("--all", action="store_true", help="Re-sync every policy")

    s = sub.add_parser("show", help="Print an identity's cache entry")
    s.add_argument("identity", help="Identity id")

    args = parser.parse_args(argv)
    try:
        normalizer = load_normalizer()
    except FileNotFoundError as e:
        print(f"[✗] {e}")
        return 2

    try:
        config = normalizer.PropagatorConfig.from_env()
    except normalizer.ConfigError as e:
        print(f"[✗] {e}")
        return 2

    if args.command == "event":
        changes = read_document(args.input)
        if isinstance(changes, dict):
            changes = [changes]
        try:
            event = build_event(changes or [], config)
        except ValueError as e:
            print(f"[✗] {e}")
            return 1
        with open(args.output, "w", encoding="utf-8") as out:
            json.dump(event, out, indent=2)
        print(f"[*] {len(event['Records'])} stream records written to {args.output}")
        return 0

    propagator = normalizer.PolicyPropagator.from_config(config)

    if args.command == "apply":
        event = read_document(args.input)
        try:
            changes = [normalizer.decode_record(r, config) for r in event.get("Records", [])]
        except normalizer.MalformedEventError as e:
            print(f"[✗] Malformed event: {e}")
            return 1
        applied = propagator.process_batch(changes)
        print(f"[✓] Applied {applied} changes")
        return 0

    if args.command == "resync":
        if args.all:
            count = propagator.resync_all()
            print(f"[✓] Re-synced {count} policies")
            return 0
        if not args.name:
            parser.error("resync needs a policy name or --all")
        count = propagator.resync(args.name)
        print(f"[✓] Re-synced policy {args.name} for {count} identities")
        return 0

    if args.command == "show":
        entry = propagator.auth_table.get_item(Key={"identity": args.identity}).get("Item")
        if not entry:
            print(f"[*] No cache entry for {args.identity}")
            return 0
        print(json.dumps(entry, indent=2, default=str))
        return 0

    return 1


def main():
    sys.exit(cli())


if __name__ == "__main__":
    main()
