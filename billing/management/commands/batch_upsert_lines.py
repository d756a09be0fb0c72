from pathlib import Path

from django.core.management.base import BaseCommand, CommandError

from billing.exceptions import BillingError
from billing.services.bulk_upsert import BulkLineUpserter, parse_invoice_line_csv


class Command(BaseCommand):
    help = "Importiert berechnete Vorschreibungspositionen aus CSV (Upsert mit Audit je Änderung)."

    def add_arguments(self, parser):
        parser.add_argument(
            "--csv",
            type=str,
            required=True,
            help="Pfad zur CSV-Datei (Spalten: invoice_id, unit_id, line_type, description, amount, tax_rate, meta).",
        )
        parser.add_argument(
            "--run-id",
            type=str,
            help="Lauf-ID für die Audit-Einträge (Default: zufällig).",
        )
        parser.add_argument(
            "--dry-run",
            action="store_true",
            help="Nur auswerten, nichts in die DB schreiben.",
        )

    def handle(self, *args, **options):
        csv_path = Path(options["csv"]).expanduser()
        if not csv_path.exists():
            raise CommandError(f"CSV-Datei nicht gefunden: {csv_path}")
        if not csv_path.is_file():
            raise CommandError(f"Kein gültiger Dateipfad: {csv_path}")

        try:
            with csv_path.open(encoding="utf-8-sig", newline="") as handle:
                rows = parse_invoice_line_csv(handle)
            summary = BulkLineUpserter(actor="batch_upsert_lines").upsert(
                rows,
                run_id=options.get("run_id"),
                dry_run=bool(options["dry_run"]),
            )
        except BillingError as exc:
            raise CommandError(str(exc)) from exc

        self.stdout.write(f"run_id: {summary.run_id}")
        self.stdout.write(f"rows: {summary.total_rows}")
        self.stdout.write(f"duplicates: {summary.duplicate_rows}")
        self.stdout.write(f"inserted: {summary.inserted}")
        self.stdout.write(f"updated: {summary.updated}")
        self.stdout.write(f"unchanged: {summary.unchanged}")

        if summary.dry_run:
            self.stdout.write(self.style.WARNING("Dry-Run: Keine Daten geschrieben."))
            return
        self.stdout.write(self.style.SUCCESS("Import abgeschlossen."))
