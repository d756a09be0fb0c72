from django.core.management.base import BaseCommand, CommandError
from django.utils import timezone

from billing.models import Organization
from billing.services.invoicing import generate_monthly_invoices, parse_month


class Command(BaseCommand):
    help = "Erzeugt Monatsvorschreibungen mit SOLL-Buchungen für aktive Mieter."

    def add_arguments(self, parser):
        parser.add_argument(
            "--month",
            type=str,
            help="Monat im Format YYYY-MM (z. B. 2026-02).",
        )
        parser.add_argument(
            "--organization",
            type=int,
            help="Optionale Hausverwaltungs-ID.",
        )

    def handle(self, *args, **options):
        try:
            month_start = parse_month(options.get("month"), today=timezone.localdate())
        except ValueError as exc:
            raise CommandError("Ungültiger Monat. Erwartet: YYYY-MM.") from exc

        organization = None
        if options.get("organization"):
            try:
                organization = Organization.objects.get(pk=options["organization"])
            except Organization.DoesNotExist as exc:
                raise CommandError(f"Hausverwaltung nicht gefunden: {options['organization']}") from exc

        summary = generate_monthly_invoices(month_start, organization=organization, actor="generate_monthly_invoices")

        self.stdout.write(f"skipped_existing: {summary.skipped_existing}")
        self.stdout.write(f"skipped_locked: {summary.skipped_locked}")
        self.stdout.write(f"skipped_zero: {summary.skipped_zero}")
        self.stdout.write(
            self.style.SUCCESS(
                f"{summary.created} Vorschreibungen für {month_start.strftime('%m.%Y')} erstellt."
            )
        )
