from django.core.management.base import BaseCommand, CommandError

from billing.services.audit import verify_stored_chain


class Command(BaseCommand):
    help = "Prüft die Hash-Kette des Audit-Protokolls."

    def handle(self, *args, **options):
        result = verify_stored_chain()
        self.stdout.write(f"checked: {result.checked}")
        if not result.is_valid:
            raise CommandError(f"Audit-Kette ungültig ab Index {result.first_invalid_index}.")
        self.stdout.write(self.style.SUCCESS("Audit-Kette ist gültig."))
