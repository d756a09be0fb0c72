"""Revisionssicheres Audit-Log.

Jeder Eintrag verkettet den Hash des Vorgängers mit dem kanonischen JSON des
eigenen Inhalts (SHA-256). Wird ein Eintrag nachträglich verändert, passt ab
dieser Position keine Prüfsumme mehr.
"""
from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable, Sequence

from django.core.serializers.json import DjangoJSONEncoder
from django.db import transaction
from django.utils import timezone

from ..models import AuditRecord

GENESIS_HASH = "0"


@dataclass(frozen=True, slots=True)
class ChainVerification:
    is_valid: bool
    first_invalid_index: int | None = None
    checked: int = 0


def canonical_json(content: object) -> str:
    return json.dumps(content, cls=DjangoJSONEncoder, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def normalize_json(content: object) -> object:
    if content is None:
        return None
    return json.loads(canonical_json(content))


def compute_record_hash(previous_hash: str, content: object) -> str:
    payload = f"{previous_hash}:{canonical_json(content)}"
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def verify_chain(contents: Sequence[object], hashes: Sequence[str]) -> ChainVerification:
    if len(contents) != len(hashes):
        return ChainVerification(is_valid=False, first_invalid_index=min(len(contents), len(hashes)))

    previous_hash = GENESIS_HASH
    for index, (content, stored_hash) in enumerate(zip(contents, hashes)):
        if compute_record_hash(previous_hash, content) != stored_hash:
            return ChainVerification(is_valid=False, first_invalid_index=index, checked=index + 1)
        previous_hash = stored_hash
    return ChainVerification(is_valid=True, checked=len(hashes))


def verify_stored_chain(records: Iterable[AuditRecord] | None = None) -> ChainVerification:
    if records is None:
        records = AuditRecord.objects.order_by("sequence").iterator()

    previous_hash = GENESIS_HASH
    checked = 0
    for index, record in enumerate(records):
        checked = index + 1
        if record.previous_hash != previous_hash:
            return ChainVerification(is_valid=False, first_invalid_index=index, checked=checked)
        if compute_record_hash(previous_hash, record.hash_content()) != record.hash:
            return ChainVerification(is_valid=False, first_invalid_index=index, checked=checked)
        previous_hash = record.hash
    return ChainVerification(is_valid=True, checked=checked)


def amount_change_payload(
    *,
    operation: str,
    new_amount: Decimal | None,
    old_amount: Decimal | None = None,
    run_id: str | None = None,
    actor: str | None = None,
) -> dict[str, object]:
    payload: dict[str, object] = {"operation": operation, "newAmount": new_amount}
    if run_id:
        payload["runId"] = run_id
    if old_amount is not None:
        payload["oldAmount"] = old_amount
    if actor:
        payload["actor"] = actor
    payload["timestamp"] = timezone.now()
    return payload


@transaction.atomic
def record_audit(
    *,
    table_name: str,
    record_id: object,
    action: str,
    old_data: object = None,
    new_data: object = None,
    actor: str = "",
    run_id: str = "",
) -> AuditRecord:
    head = AuditRecord.objects.select_for_update().order_by("-sequence").first()
    record = AuditRecord(
        sequence=(head.sequence + 1) if head else 1,
        table_name=table_name,
        record_id=str(record_id),
        action=action,
        old_data=normalize_json(old_data),
        new_data=normalize_json(new_data),
        actor=actor or "",
        run_id=str(run_id or ""),
        created_at=timezone.now(),
        previous_hash=head.hash if head else GENESIS_HASH,
    )
    record.hash = compute_record_hash(record.previous_hash, record.hash_content())
    record.save()
    return record
