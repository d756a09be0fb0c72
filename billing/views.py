import json
import logging
from datetime import date

from django.apps import apps
from django.http import JsonResponse
from django.utils.decorators import method_decorator
from django.views import View
from django.views.decorators.csrf import csrf_exempt

from .exceptions import BillingError, NotFoundError, ValidationError
from .models import Job, Payment, PaymentAllocation, Tenant
from .services.allocation import MODE_FIFO, PaymentAllocator
from .services.job_queue import enqueue
from .services.ledger import LedgerService
from .services.limiter import CapacityExceeded
from .services.money import quantize_cent

logger = logging.getLogger(__name__)


def _get_or_404(model, pk):
    try:
        return model.objects.get(pk=pk)
    except (model.DoesNotExist, ValueError, TypeError) as exc:
        raise NotFoundError(f"{model._meta.verbose_name} {pk} nicht gefunden.") from exc


def _parse_date(value, field_name):
    if not value:
        return None
    try:
        return date.fromisoformat(str(value))
    except ValueError as exc:
        raise ValidationError(f"Ungültiges Datum in '{field_name}': {value}") from exc


def _allocation_payload(result):
    return {
        "paymentId": result.payment_id,
        "changed": result.changed,
        "unapplied": str(result.plan.unapplied),
        "allocations": [
            {
                "invoiceId": line.invoice_id,
                "amount": str(line.applied_amount),
                "operatingCosts": str(line.amount_for("operating_costs")),
                "heating": str(line.amount_for("heating")),
                "rent": str(line.amount_for("rent")),
                "vat": str(line.vat_amount),
            }
            for line in result.plan.allocations
        ],
    }


@method_decorator(csrf_exempt, name="dispatch")
class BillingApiView(View):
    """JSON-Basisview: Fachfehler werden zu strukturierten Antworten (409 bei Konflikten)."""

    limiter = None
    write_methods = {"post", "put", "patch", "delete"}

    def get_limiter(self):
        if self.limiter is not None:
            return self.limiter
        return getattr(apps.get_app_config("billing"), "limiter", None)

    def dispatch(self, request, *args, **kwargs):
        limiter = self.get_limiter()
        try:
            if limiter is not None and request.method.lower() in self.write_methods:
                with limiter.slot():
                    return super().dispatch(request, *args, **kwargs)
            return super().dispatch(request, *args, **kwargs)
        except CapacityExceeded as exc:
            return JsonResponse({"error": "capacity_exceeded", "detail": str(exc)}, status=503)
        except BillingError as exc:
            return JsonResponse(exc.as_payload(), status=exc.http_status)

    def actor(self):
        user = getattr(self.request, "user", None)
        if user is not None and user.is_authenticated:
            return user.get_username()
        return "api"

    def json_body(self):
        if not self.request.body:
            return {}
        try:
            data = json.loads(self.request.body.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise ValidationError(f"Ungültiges JSON: {exc}") from exc
        if not isinstance(data, dict):
            raise ValidationError("JSON-Objekt erwartet.")
        return data


class PaymentCreateView(BillingApiView):
    http_method_names = ["post"]

    def post(self, request, *args, **kwargs):
        data = self.json_body()
        tenant = _get_or_404(Tenant, data.get("tenantId"))
        booking_date = _parse_date(data.get("bookingDate"), "bookingDate")
        if booking_date is None:
            raise ValidationError("bookingDate fehlt.")
        try:
            amount = quantize_cent(data.get("amount"))
        except ValueError as exc:
            raise ValidationError(str(exc)) from exc
        _payment, result = PaymentAllocator(actor=self.actor()).post_payment(
            tenant=tenant,
            amount=amount,
            booking_date=booking_date,
            reference=str(data.get("reference") or ""),
            payment_type=data.get("paymentType") or Payment.PaymentType.UEBERWEISUNG,
        )
        return JsonResponse(_allocation_payload(result), status=201)


class PaymentAllocateView(BillingApiView):
    http_method_names = ["post"]

    def post(self, request, *args, **kwargs):
        data = self.json_body()
        payment = _get_or_404(Payment, kwargs["pk"])
        invoice_ids = data.get("invoiceIds")
        if invoice_ids is not None and not isinstance(invoice_ids, list):
            raise ValidationError("invoiceIds muss eine Liste sein.")
        result = PaymentAllocator(actor=self.actor()).allocate_payment(
            payment,
            mode=data.get("mode") or MODE_FIFO,
            source=data.get("source") or PaymentAllocation.Source.MANUAL,
            invoice_ids=invoice_ids,
        )
        return JsonResponse(_allocation_payload(result))


class PaymentReverseView(BillingApiView):
    http_method_names = ["post"]

    def post(self, request, *args, **kwargs):
        data = self.json_body()
        payment = _get_or_404(Payment, kwargs["pk"])
        storno = LedgerService(actor=self.actor()).reverse(
            payment,
            booking_date=_parse_date(data.get("bookingDate"), "bookingDate"),
            reason=str(data.get("reason") or ""),
        )
        return JsonResponse(
            {
                "paymentId": payment.pk,
                "stornoEntryId": storno.pk,
                "amount": str(storno.amount),
                "saldo": str(LedgerService().saldo(payment.tenant)),
            },
            status=201,
        )


class TenantSaldoView(BillingApiView):
    http_method_names = ["get"]

    def get(self, request, *args, **kwargs):
        tenant = _get_or_404(Tenant, kwargs["pk"])
        ledger = LedgerService()
        rows = ledger.statement(tenant)
        return JsonResponse(
            {
                "tenantId": tenant.pk,
                "saldo": str(rows[-1].saldo if rows else ledger.saldo(tenant)),
                "entries": [
                    {
                        "id": row.entry.pk,
                        "date": row.entry.booking_date.isoformat(),
                        "type": row.entry.entry_type,
                        "text": row.entry.text,
                        "amount": str(row.signed_amount),
                        "saldo": str(row.saldo),
                    }
                    for row in rows
                ],
            }
        )


class JobCreateView(BillingApiView):
    http_method_names = ["post"]

    def post(self, request, *args, **kwargs):
        data = self.json_body()
        payload = data.get("payload") or {}
        if not isinstance(payload, dict):
            raise ValidationError("payload muss ein JSON-Objekt sein.")
        try:
            max_retries = int(data.get("maxRetries") or 3)
        except (TypeError, ValueError) as exc:
            raise ValidationError("maxRetries muss eine Zahl sein.") from exc
        job = enqueue(str(data.get("jobType") or ""), payload, max_retries=max_retries)
        logger.info("Auftrag %s (%s) eingereiht von %s.", job.pk, job.job_type, self.actor())
        return JsonResponse({"id": job.pk, "status": job.status, **job.to_payload()}, status=201)


class JobDetailView(BillingApiView):
    http_method_names = ["get"]

    def get(self, request, *args, **kwargs):
        job = _get_or_404(Job, kwargs["pk"])
        return JsonResponse(
            {
                "id": job.pk,
                "status": job.status,
                "error": job.error,
                "result": job.result,
                **job.to_payload(),
            }
        )
