from django.core.management.base import BaseCommand, CommandError

from billing.models import Organization
from billing.services.invoicing import parse_month
from billing.services.period_locks import lock_period, unlock_period


class Command(BaseCommand):
    help = "Sperrt oder entsperrt einen Abrechnungsmonat einer Hausverwaltung."

    def add_arguments(self, parser):
        parser.add_argument(
            "--organization",
            type=int,
            required=True,
            help="Hausverwaltungs-ID.",
        )
        parser.add_argument(
            "--month",
            type=str,
            required=True,
            help="Monat im Format YYYY-MM.",
        )
        parser.add_argument(
            "--reason",
            type=str,
            default="",
            help="Begründung für die Sperre.",
        )
        parser.add_argument(
            "--unlock",
            action="store_true",
            help="Sperre aufheben statt setzen.",
        )

    def handle(self, *args, **options):
        try:
            organization = Organization.objects.get(pk=options["organization"])
        except Organization.DoesNotExist as exc:
            raise CommandError(f"Hausverwaltung nicht gefunden: {options['organization']}") from exc
        try:
            month_start = parse_month(options["month"])
        except ValueError as exc:
            raise CommandError("Ungültiger Monat. Erwartet: YYYY-MM.") from exc

        period = month_start.strftime("%m.%Y")
        if options["unlock"]:
            if unlock_period(organization, month_start.year, month_start.month):
                self.stdout.write(self.style.SUCCESS(f"Periode {period} entsperrt."))
            else:
                self.stdout.write(self.style.WARNING(f"Periode {period} war nicht gesperrt."))
            return

        lock_period(
            organization,
            month_start.year,
            month_start.month,
            locked_by="lock_period",
            reason=options["reason"],
        )
        self.stdout.write(self.style.SUCCESS(f"Periode {period} gesperrt."))
