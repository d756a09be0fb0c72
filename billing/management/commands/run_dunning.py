from datetime import date

from django.core.management.base import BaseCommand, CommandError
from django.utils import timezone

from billing.models import Organization
from billing.services.dunning import DunningService


class Command(BaseCommand):
    help = "Prüft überfällige Vorschreibungen und erhöht Mahnstufen, Gebühren und Verzugszinsen."

    def add_arguments(self, parser):
        parser.add_argument(
            "--organization",
            type=int,
            help="Optionale Hausverwaltungs-ID.",
        )
        parser.add_argument(
            "--today",
            type=str,
            help="Stichtag im Format YYYY-MM-DD (Default: heute).",
        )

    def handle(self, *args, **options):
        today = self._parse_date(options.get("today"))
        organization = None
        if options.get("organization"):
            try:
                organization = Organization.objects.get(pk=options["organization"])
            except Organization.DoesNotExist as exc:
                raise CommandError(f"Hausverwaltung nicht gefunden: {options['organization']}") from exc

        summary = DunningService(actor="run_dunning").run(organization=organization, today=today)

        self.stdout.write(f"run_date: {summary.run_date.isoformat()}")
        self.stdout.write(f"processed: {summary.processed}")
        self.stdout.write(f"escalated: {summary.escalated}")
        self.stdout.write(f"closed: {summary.closed}")
        self.stdout.write(f"fees_posted: {summary.fees_posted}")
        self.stdout.write(f"interest_posted: {summary.interest_posted}")
        self.stdout.write(f"failed: {summary.failed}")
        for error in summary.errors:
            self.stderr.write(f"- Vorschreibung #{error['invoice_id']}: {error['error']}")
        if summary.failed:
            self.stdout.write(self.style.WARNING(f"{summary.failed} Vorschreibungen mit Fehler übersprungen."))
        else:
            self.stdout.write(self.style.SUCCESS("Mahnlauf abgeschlossen."))

    def _parse_date(self, raw_value):
        if not raw_value:
            return timezone.localdate()
        try:
            return date.fromisoformat(raw_value)
        except ValueError as exc:
            raise CommandError("Ungültiges Datum. Erwartet: YYYY-MM-DD.") from exc
