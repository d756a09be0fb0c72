from __future__ import annotations

from django.core.exceptions import ValidationError as DjangoValidationError


class BillingError(RuntimeError):
    """Basisklasse für fachliche Fehler im Abrechnungskern."""

    code = "billing_error"
    http_status = 400

    def __init__(self, message: str = "", **details):
        super().__init__(message or self.__class__.__doc__ or self.code)
        self.message = message or (self.__class__.__doc__ or self.code)
        self.details = details

    def __str__(self) -> str:
        return self.message

    def as_payload(self) -> dict[str, object]:
        payload: dict[str, object] = {"error": self.code, "detail": self.message}
        if self.details:
            payload["context"] = self.details
        return payload


class ValidationError(BillingError, DjangoValidationError):
    """Ungültige Eingabe."""

    code = "validation_error"
    http_status = 400

    def __init__(self, message: str = "", **details):
        BillingError.__init__(self, message, **details)
        DjangoValidationError.__init__(self, self.message, code=type(self).code)


class NotFoundError(BillingError):
    """Datensatz nicht gefunden."""

    code = "not_found"
    http_status = 404


class PeriodLockedError(BillingError):
    """Periode ist gesperrt."""

    code = "period_locked"
    http_status = 409


class ConcurrencyConflict(BillingError):
    """Datensatz wurde zwischenzeitlich geändert."""

    code = "concurrency_conflict"
    http_status = 409


class AlreadyReversedError(BillingError):
    """Zahlung wurde bereits storniert."""

    code = "already_reversed"
    http_status = 409


class DeadlineExceededError(BillingError):
    """Gesetzliche Frist überschritten."""

    code = "deadline_exceeded"
    http_status = 422


class JobExhaustedError(BillingError):
    """Maximale Anzahl an Wiederholungen erreicht."""

    code = "job_exhausted"
    http_status = 500
