from django.apps import AppConfig
from django.conf import settings


class BillingConfig(AppConfig):
    default_auto_field = "django.db.models.BigAutoField"
    name = "billing"
    verbose_name = "Mietkonto & Abrechnung"

    def ready(self):
        from .services.limiter import ConcurrencyLimiter

        self.limiter = ConcurrencyLimiter(getattr(settings, "BILLING_API_MAX_CONCURRENT", 8))
