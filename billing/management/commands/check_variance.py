from pathlib import Path

from django.core.management.base import BaseCommand, CommandError

from billing.exceptions import BillingError
from billing.models import PaymentAllocation
from billing.services.bulk_upsert import parse_invoice_line_csv
from billing.services.reconciliation import allocation_variances, line_variances


class Command(BaseCommand):
    help = (
        "Vergleicht eine Trockenlauf-Basis (CSV) mit den gespeicherten Positionen "
        "und paid_amount mit den Zahlungszuordnungen (Toleranz 0,01 EUR)."
    )

    def add_arguments(self, parser):
        parser.add_argument(
            "--csv",
            type=str,
            help="Optionale CSV-Basis der erwarteten Positionen.",
        )
        parser.add_argument(
            "--exclude-source",
            type=str,
            choices=PaymentAllocation.Source.values,
            help="Zuordnungen dieser Quelle nicht mitzählen (z. B. seed).",
        )

    def handle(self, *args, **options):
        reports = []
        if options.get("csv"):
            csv_path = Path(options["csv"]).expanduser()
            if not csv_path.is_file():
                raise CommandError(f"CSV-Datei nicht gefunden: {csv_path}")
            try:
                with csv_path.open(encoding="utf-8-sig", newline="") as handle:
                    baseline = parse_invoice_line_csv(handle)
            except BillingError as exc:
                raise CommandError(str(exc)) from exc
            reports.append(("lines", line_variances(baseline)))
        reports.append(("allocations", allocation_variances(exclude_source=options.get("exclude_source"))))

        variance_count = 0
        for label, report in reports:
            self.stdout.write(f"{label}_checked: {report.checked}")
            self.stdout.write(f"{label}_variances: {len(report.variances)}")
            for variance in report.variances:
                actual = "fehlt" if variance.actual is None else variance.actual
                self.stdout.write(
                    f"- {variance.key}: erwartet {variance.expected}, ist {actual}, Differenz {variance.difference}"
                )
            variance_count += len(report.variances)

        if variance_count:
            raise CommandError(f"{variance_count} Abweichung(en) über Toleranz gefunden.")
        self.stdout.write(self.style.SUCCESS("Keine Abweichungen."))
