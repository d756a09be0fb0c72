from __future__ import annotations

import csv
import io
import json
import logging
import uuid
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Iterable, Mapping, TextIO

from django.db import transaction
from django.utils import timezone

from ..exceptions import NotFoundError, ValidationError
from ..models import InvoiceLine, MonthlyInvoice, Unit
from .audit import amount_change_payload, record_audit
from .money import quantize_cent, to_decimal
from .period_locks import assert_period_open

logger = logging.getLogger(__name__)

CSV_COLUMNS = ("invoice_id", "unit_id", "line_type", "description", "amount", "tax_rate", "meta")
REQUIRED_COLUMNS = ("invoice_id", "line_type", "description", "amount")
BATCH_SIZE = 500

LineKey = tuple[int, "int | None", str, str]


@dataclass(frozen=True, slots=True)
class InvoiceLineRow:
    invoice_id: int
    unit_id: int | None
    line_type: str
    description: str
    amount: Decimal
    tax_rate: Decimal = Decimal("10.00")
    meta: Mapping[str, object] = field(default_factory=dict)

    def __post_init__(self):
        if self.line_type not in InvoiceLine.LineType.values:
            raise ValidationError(f"Unbekannter Positionstyp: {self.line_type}")
        if not str(self.description or "").strip():
            raise ValidationError("Beschreibung darf nicht leer sein.")
        object.__setattr__(self, "amount", quantize_cent(self.amount))
        object.__setattr__(self, "tax_rate", quantize_cent(self.tax_rate))
        if self.tax_rate < 0:
            raise ValidationError(f"Negativer Steuersatz: {self.tax_rate}")

    @property
    def normalized_description(self) -> str:
        return InvoiceLine.normalize_description(self.description)

    @property
    def key(self) -> LineKey:
        return (self.invoice_id, self.unit_id, self.line_type, self.normalized_description)

    @classmethod
    def from_mapping(cls, data: Mapping[str, object]) -> "InvoiceLineRow":
        missing = [column for column in REQUIRED_COLUMNS if data.get(column) in (None, "")]
        if missing:
            raise ValidationError(f"Pflichtfelder fehlen: {', '.join(missing)}")
        try:
            invoice_id = int(data["invoice_id"])
            raw_unit = data.get("unit_id")
            unit_id = int(raw_unit) if raw_unit not in (None, "") else None
            amount = to_decimal(data["amount"])
            tax_rate = to_decimal(data.get("tax_rate") or "10.00")
        except (TypeError, ValueError) as exc:
            raise ValidationError(f"Ungültiger Wert: {exc}") from exc

        meta = data.get("meta") or {}
        if isinstance(meta, str):
            try:
                meta = json.loads(meta)
            except json.JSONDecodeError as exc:
                raise ValidationError(f"meta ist kein gültiges JSON: {exc.msg}") from exc
        if not isinstance(meta, dict):
            raise ValidationError("meta muss ein JSON-Objekt sein.")

        return cls(
            invoice_id=invoice_id,
            unit_id=unit_id,
            line_type=str(data["line_type"]).strip().lower(),
            description=str(data["description"]).strip(),
            amount=amount,
            tax_rate=tax_rate,
            meta=meta,
        )


def parse_invoice_line_csv(source: str | TextIO) -> list[InvoiceLineRow]:
    stream = io.StringIO(source) if isinstance(source, str) else source
    reader = csv.DictReader(stream)
    header = [column.strip() for column in (reader.fieldnames or [])]
    missing = [column for column in REQUIRED_COLUMNS if column not in header]
    if missing:
        raise ValidationError(f"CSV-Spalten fehlen: {', '.join(missing)}")

    rows: list[InvoiceLineRow] = []
    for row_number, raw in enumerate(reader, start=2):
        cleaned = {str(key).strip(): value for key, value in raw.items() if key is not None}
        try:
            rows.append(InvoiceLineRow.from_mapping(cleaned))
        except ValidationError as exc:
            raise ValidationError(f"Zeile {row_number}: {exc.message}", row=row_number) from exc
    return rows


def rows_from_payload(items: Iterable[Mapping[str, object]]) -> list[InvoiceLineRow]:
    rows: list[InvoiceLineRow] = []
    for index, item in enumerate(items):
        try:
            rows.append(InvoiceLineRow.from_mapping(item))
        except ValidationError as exc:
            raise ValidationError(f"Position {index}: {exc.message}", index=index) from exc
    return rows


@dataclass(slots=True)
class UpsertSummary:
    run_id: str
    total_rows: int = 0
    staged_rows: int = 0
    duplicate_rows: int = 0
    inserted: int = 0
    updated: int = 0
    unchanged: int = 0
    dry_run: bool = False

    def as_dict(self) -> dict[str, object]:
        return {
            "run_id": self.run_id,
            "total_rows": self.total_rows,
            "staged_rows": self.staged_rows,
            "duplicate_rows": self.duplicate_rows,
            "inserted": self.inserted,
            "updated": self.updated,
            "unchanged": self.unchanged,
            "dry_run": self.dry_run,
        }


class BulkLineUpserter:
    """Idempotenter Import von Vorschreibungspositionen mit Audit je Änderung."""

    def __init__(self, *, actor: str = "import"):
        self.actor = actor

    @staticmethod
    def stage(rows: Iterable[InvoiceLineRow]) -> tuple[dict[LineKey, InvoiceLineRow], int, int]:
        staged: dict[LineKey, InvoiceLineRow] = {}
        total = 0
        for row in rows:
            total += 1
            # doppelte Schlüssel im selben Lauf: letzte Zeile gewinnt
            staged[row.key] = row
        return staged, total, total - len(staged)

    def upsert(self, rows: Iterable[InvoiceLineRow], *, run_id: str | None = None, dry_run: bool = False) -> UpsertSummary:
        run_id = run_id or uuid.uuid4().hex
        try:
            return self._upsert(list(rows), run_id=run_id, dry_run=dry_run)
        except Exception:
            logger.exception("Positionen-Import %s abgebrochen, alle Änderungen zurückgerollt.", run_id)
            raise

    @transaction.atomic
    def _upsert(self, rows: list[InvoiceLineRow], *, run_id: str, dry_run: bool) -> UpsertSummary:
        staged, total, duplicates = self.stage(rows)
        summary = UpsertSummary(run_id=run_id, total_rows=total, staged_rows=len(staged), duplicate_rows=duplicates)
        summary.dry_run = dry_run
        if not staged:
            return summary

        invoice_ids = sorted({key[0] for key in staged})
        invoices = {
            invoice.pk: invoice
            for invoice in MonthlyInvoice.objects.select_for_update().filter(pk__in=invoice_ids)
        }
        missing_invoices = sorted(set(invoice_ids) - set(invoices))
        if missing_invoices:
            raise NotFoundError(f"Vorschreibung(en) {missing_invoices} nicht gefunden.", invoice_ids=missing_invoices)

        unit_ids = sorted({key[1] for key in staged if key[1] is not None} | {i.unit_id for i in invoices.values()})
        organization_by_unit = dict(Unit.objects.filter(pk__in=unit_ids).values_list("pk", "property__organization_id"))
        missing_units = sorted({key[1] for key in staged if key[1] is not None} - set(organization_by_unit))
        if missing_units:
            raise NotFoundError(f"Einheit(en) {missing_units} nicht gefunden.", unit_ids=missing_units)
        for invoice in invoices.values():
            assert_period_open(organization_by_unit.get(invoice.unit_id), invoice.year, invoice.month)

        existing: dict[LineKey, InvoiceLine] = {
            (line.invoice_id, line.unit_id, line.line_type, line.normalized_description): line
            for line in InvoiceLine.objects.select_for_update().filter(invoice_id__in=invoice_ids)
        }

        to_create: list[InvoiceLine] = []
        to_update: list[tuple[InvoiceLine, Decimal]] = []
        for key, row in staged.items():
            current = existing.get(key)
            if current is None:
                to_create.append(
                    InvoiceLine(
                        invoice_id=row.invoice_id,
                        unit_id=row.unit_id,
                        line_type=row.line_type,
                        description=row.description,
                        normalized_description=row.normalized_description,
                        amount=row.amount,
                        tax_rate=row.tax_rate,
                        meta=dict(row.meta),
                    )
                )
                continue
            if (
                quantize_cent(current.amount) == row.amount
                and quantize_cent(current.tax_rate) == row.tax_rate
                and current.description == row.description
                and (current.meta or {}) == dict(row.meta)
            ):
                summary.unchanged += 1
                continue
            old_amount = quantize_cent(current.amount)
            current.description = row.description
            current.amount = row.amount
            current.tax_rate = row.tax_rate
            current.meta = dict(row.meta)
            current.updated_at = timezone.now()
            to_update.append((current, old_amount))

        summary.inserted = len(to_create)
        summary.updated = len(to_update)
        if dry_run:
            return summary

        if to_create:
            InvoiceLine.objects.bulk_create(to_create, batch_size=BATCH_SIZE)
        if to_update:
            InvoiceLine.objects.bulk_update(
                [line for line, _old in to_update],
                ["description", "amount", "tax_rate", "meta", "updated_at"],
                batch_size=BATCH_SIZE,
            )

        created_keys = {
            (line.invoice_id, line.unit_id, line.line_type, line.normalized_description) for line in to_create
        }
        ids_by_key = {
            (line.invoice_id, line.unit_id, line.line_type, line.normalized_description): line.pk
            for line in InvoiceLine.objects.filter(invoice_id__in=invoice_ids).only(
                "pk", "invoice_id", "unit_id", "line_type", "normalized_description"
            )
        }
        for key in sorted(created_keys, key=str):
            record_audit(
                table_name="invoice_lines",
                record_id=ids_by_key[key],
                action="insert",
                new_data=amount_change_payload(
                    operation="insert",
                    new_amount=staged[key].amount,
                    run_id=run_id,
                    actor=self.actor,
                ),
                actor=self.actor,
                run_id=run_id,
            )
        for line, old_amount in to_update:
            record_audit(
                table_name="invoice_lines",
                record_id=line.pk,
                action="update",
                old_data={"amount": old_amount},
                new_data=amount_change_payload(
                    operation="update",
                    new_amount=line.amount,
                    old_amount=old_amount,
                    run_id=run_id,
                    actor=self.actor,
                ),
                actor=self.actor,
                run_id=run_id,
            )

        logger.info(
            "Positionen-Import %s: %s neu, %s geändert, %s unverändert.",
            run_id,
            summary.inserted,
            summary.updated,
            summary.unchanged,
        )
        return summary
