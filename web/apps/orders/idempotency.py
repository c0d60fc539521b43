"""Idempotency utilities for safely handling duplicate requests.

This module stores and retrieves idempotency keys to safely de-duplicate
order creation requests. It supports creating an idempotent record,
detecting conflicts when the same key is used with a different payload,
and finalizing a stored response so subsequent retries can short-circuit
without reserving stock or consuming a discount use again.
"""

import hashlib
import json

from django.core.serializers.json import DjangoJSONEncoder
from django.db import IntegrityError, transaction

from .models import IdempotencyKey


class IdempotencyConflict(Exception):
    """The key was already used with a different payload."""


def _hash(payload: dict) -> str:
    """Compute a stable SHA-256 hash for a JSON-serializable payload.

    The payload is serialized with sorted keys and compact separators to
    ensure a deterministic representation before hashing.
    """
    body = json.dumps(payload, sort_keys=True, separators=(",", ":"), cls=DjangoJSONEncoder)
    return hashlib.sha256(body.encode("utf-8")).hexdigest()


@transaction.atomic
def get_or_create_idempotent(key: str, payload: dict):
    """Get-or-create an idempotency record for the given key and payload.

    Behavior:
        - First request with a new key: create a record and return
          ``(False, rec)``; the caller finalizes it once it has a response.
        - Same key and same payload: lock and return ``(True, rec)``.
        - Same key, different payload: raise ``IdempotencyConflict``.

    The create path runs in a nested savepoint so an IntegrityError only
    rolls that block back; the existing-record path takes a row lock
    (SELECT ... FOR UPDATE) to serialize concurrent retries.

    Returns:
        tuple[bool, IdempotencyKey]: ``(existing, rec)``.
    """
    h = _hash(payload)

    try:
        with transaction.atomic():
            rec = IdempotencyKey.objects.create(
                key=key, request_hash=h, response_status=0, response_body={}
            )
            return False, rec
    except IntegrityError:
        rec = IdempotencyKey.objects.select_for_update().get(key=key)
        if rec.request_hash != h:
            raise IdempotencyConflict(key)
        return True, rec


def is_pending(rec: IdempotencyKey) -> bool:
    """True while the first request for ``rec`` has not produced a response."""
    return not rec.response_status


def finalize(rec: IdempotencyKey, status_code: int, body: dict, order_id=None):
    """Persist the final response for an idempotent request.

    Args:
        rec: The idempotency record to update.
        status_code: HTTP status code to store for the response.
        body: JSON-serializable response body to persist.
        order_id: Optional order identifier to link to the record.
    """
    rec.response_status = status_code
    rec.response_body = body
    if order_id is not None:
        rec.order_id = order_id
    rec.save(update_fields=["response_status", "response_body", "order_id"])


def forget(rec: IdempotencyKey) -> None:
    """Delete a record whose request failed in a retryable way."""
    rec.delete()
