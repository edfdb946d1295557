# app/lambdas/authorize/handler.py
import fnmatch
import json
import logging
import os

import boto3
import jwt
from botocore.exceptions import ClientError

logger = logging.getLogger()
logger.setLevel(logging.INFO)

ACTION_PREFIX = os.environ.get("ACTION_PREFIX", "api")
JWT_ISSUER = os.environ.get("JWT_ISSUER")
JWT_AUDIENCE = os.environ.get("JWT_AUDIENCE")
JWT_ALGORITHMS = [a.strip() for a in os.environ.get("JWT_ALGORITHMS", "RS256").split(",") if a.strip()]
READ_METHODS = {"GET", "HEAD", "OPTIONS"}
ANONYMOUS = "anonymous"

_table = None
_jwks_client = None


def _auth_table_name():
    name = os.environ.get("AUTH_TABLE")
    if not name:
        resources = json.loads(os.environ.get("Resources") or "{}")
        name = resources.get("LeoAuth")
    if not name:
        raise ValueError("AUTH_TABLE is not configured")
    return name


def _auth_table():
    global _table
    if _table is None:
        _table = boto3.resource("dynamodb").Table(_auth_table_name())
    return _table


def _jwks():
    global _jwks_client
    if _jwks_client is None:
        url = os.environ.get("JWKS_URL")
        if not url:
            raise ValueError("JWKS_URL is not configured")
        _jwks_client = jwt.PyJWKClient(url)
    return _jwks_client


def _bearer_token(auth_header):
    scheme, _, token = (auth_header or "").strip().partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def verify_jwt_claims(auth_header):
    """
    Verify a bearer token against the issuer's JWKS and return its claims.

    Signature, expiry, issuer and audience are all checked. Any token that
    fails verification yields no claims.
    """
    token = _bearer_token(auth_header)
    if token is None:
        return {}
    try:
        signing_key = _jwks().get_signing_key_from_jwt(token)
        return jwt.decode(
            token,
            signing_key.key,
            algorithms=JWT_ALGORITHMS,
            audience=JWT_AUDIENCE,
            issuer=JWT_ISSUER,
            options={"require": ["exp", "sub"]},
        )
    except jwt.PyJWTError as e:
        logger.warning("Rejected bearer token: %s", e)
        return {}


def principal_of(event):
    headers = event.get("headers") or {}
    claims = verify_jwt_claims(headers.get("authorization", ""))
    return claims.get("sub") or ANONYMOUS


def request_of(event):
    http = event.get("requestContext", {}).get("http", {})
    method = http.get("method", "GET").upper()
    verb = "Read" if method in READ_METHODS else "Write"
    resource = event.get("rawPath") or http.get("path") or "/"
    return f"{ACTION_PREFIX}:{verb}", resource


def _as_list(value):
    if value is None:
        return []
    return value if isinstance(value, list) else [value]


def iter_statements(statements):
    """Yield statement dicts from a cached value; the empty placeholder yields nothing."""
    for item in _as_list(statements):
        if not isinstance(item, dict):
            continue
        if "Statement" in item:
            yield from iter_statements(item["Statement"])
        else:
            yield item


def _matches(patterns, value, ignore_case=False):
    if ignore_case:
        value = value.lower()
    for pattern in patterns:
        pattern = str(pattern)
        if ignore_case:
            pattern = pattern.lower()
        if fnmatch.fnmatchcase(value, pattern):
            return True
    return False


def evaluate(policies, action, resource):
    """
    Evaluate cached policies for one request.

    An explicit Deny wins over any Allow; no matching statement is an
    implicit deny. Returns (allowed, reason).
    """
    allowed_by = None
    for name, statements in sorted((policies or {}).items()):
        for statement in iter_statements(statements):
            if not _matches(_as_list(statement.get("Action")), action, ignore_case=True):
                continue
            if not _matches(_as_list(statement.get("Resource", "*")), resource):
                continue
            effect = str(statement.get("Effect", "")).lower()
            if effect == "deny":
                return False, f"explicit_deny:{name}"
            if effect == "allow" and allowed_by is None:
                allowed_by = name
    if allowed_by is not None:
        return True, f"allow:{allowed_by}"
    return False, "implicit_deny"


def _response(principal_id, allowed, reason):
    return {
        "isAuthorized": allowed,
        "context": {
            "principalId": principal_id,
            "decision": "allow" if allowed else "deny",
            "reason": reason,
        },
    }


def lambda_handler(event, context):
    """
    HTTP API v2 REQUEST authorizer backed by the LeoAuth identity cache.
    """
    logger.info("Authorizer event: %s", json.dumps(event))

    principal_id = principal_of(event)
    if principal_id == ANONYMOUS:
        return _response(principal_id, False, ANONYMOUS)

    action, resource = request_of(event)
    try:
        item = _auth_table().get_item(Key={"identity": principal_id}).get("Item")
    except ClientError:
        logger.exception("Identity cache lookup failed for %s", principal_id)
        return _response(principal_id, False, "lookup_failed")

    if not item or not item.get("policies"):
        return _response(principal_id, False, "no_policies")

    allowed, reason = evaluate(item["policies"], action, resource)
    logger.info("Decision for %s %s %s: %s (%s)", principal_id, action, resource, allowed, reason)
    return _response(principal_id, allowed, reason)
