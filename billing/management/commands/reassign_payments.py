from __future__ import annotations

import uuid

from django.core.management.base import BaseCommand, CommandError
from django.db import DatabaseError, transaction

from billing.exceptions import BillingError
from billing.models import PaymentAllocation
from billing.services.allocation import PaymentAllocator
from billing.services.audit import record_audit
from billing.services.money import quantize_cent
from billing.services.reconciliation import payment_mismatches


class Command(BaseCommand):
    help = (
        "Ordnet Zahlungen neu zu, deren Zuordnungen plus Überzahlung nicht dem "
        "Zahlungsbetrag entsprechen. Ohne --apply nur Vorschau."
    )

    def add_arguments(self, parser):
        mode = parser.add_mutually_exclusive_group()
        mode.add_argument(
            "--dry-run",
            action="store_true",
            help="Nur auswerten, nichts in die DB schreiben (Default).",
        )
        mode.add_argument(
            "--apply",
            action="store_true",
            help="Zuordnungen tatsächlich neu schreiben.",
        )
        parser.add_argument(
            "--batch-size",
            type=int,
            default=500,
            help="Anzahl Zahlungen je Abfrage (Default: 500).",
        )
        parser.add_argument(
            "--tenant-id",
            type=int,
            help="Optional nur Zahlungen eines Mieters.",
        )
        parser.add_argument(
            "--run-id",
            type=str,
            help="Optionale Lauf-ID für die Audit-Einträge.",
        )

    def handle(self, *args, **options):
        apply_changes = bool(options.get("apply"))
        batch_size = options["batch_size"]
        if batch_size < 1:
            raise CommandError("--batch-size muss mindestens 1 sein.")
        run_id = options.get("run_id") or uuid.uuid4().hex
        allocator = PaymentAllocator(actor="reassign_payments")

        checked = 0
        repaired = 0
        failed_ids: set[int] = set()
        for payment in payment_mismatches(
            tenant_id=options.get("tenant_id"),
            batch_size=batch_size,
        ):
            checked += 1
            before = {
                "amount": quantize_cent(payment.amount),
                "allocated": quantize_cent(payment.allocated),
                "unapplied": quantize_cent(payment.unapplied_amount),
            }
            try:
                if apply_changes:
                    result = allocator.allocate_payment(
                        payment,
                        source=PaymentAllocation.Source.REPAIR,
                        run_id=run_id,
                    )
                else:
                    with transaction.atomic():
                        result = allocator.allocate_payment(
                            payment,
                            source=PaymentAllocation.Source.REPAIR,
                            run_id=run_id,
                        )
                        transaction.set_rollback(True)
            except (BillingError, DatabaseError) as exc:
                failed_ids.add(payment.pk)
                record_audit(
                    table_name="payments",
                    record_id=payment.pk,
                    action="reassign_payment_error",
                    old_data=before,
                    new_data={"error": str(exc)},
                    actor="reassign_payments",
                    run_id=run_id,
                )
                self.stderr.write(f"Fehler bei Zahlung #{payment.pk}: {exc}")
                continue

            after = {
                "allocated": result.plan.total_applied,
                "unapplied": result.plan.unapplied,
                "allocations": [
                    {"invoiceId": line.invoice_id, "amount": line.applied_amount}
                    for line in result.plan.allocations
                ],
            }
            record_audit(
                table_name="payments",
                record_id=payment.pk,
                action="reassign_payment_applied" if apply_changes else "reassign_payment_dryrun",
                old_data=before,
                new_data=after,
                actor="reassign_payments",
                run_id=run_id,
            )
            repaired += 1
            self.stdout.write(
                f"- #{payment.pk} Betrag {before['amount']}: zugeordnet {before['allocated']} -> "
                f"{after['allocated']}, Überzahlung {before['unapplied']} -> {after['unapplied']}"
            )

        self.stdout.write(f"run_id: {run_id}")
        self.stdout.write(f"checked: {checked}")
        self.stdout.write(f"repaired: {repaired}")
        self.stdout.write(f"failed: {len(failed_ids)}")

        if not apply_changes:
            self.stdout.write(
                self.style.WARNING("Dry-Run: Keine Zuordnungen geändert. Mit --apply werden sie neu geschrieben.")
            )
            return
        self.stdout.write(self.style.SUCCESS(f"{repaired} Zahlungen neu zugeordnet."))
