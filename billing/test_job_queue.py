from __future__ import annotations

from datetime import timedelta
from decimal import Decimal
from io import StringIO

from django.core.management import call_command
from django.test import TestCase, override_settings
from django.utils import timezone

from billing.exceptions import ValidationError
from billing.models import Job, MonthlyInvoice, Settlement
from billing.services.job_queue import JobWorker, backoff_seconds, claim_next_job, enqueue
from billing.testing import create_property, create_tenant, create_unit


def _failing_handler(payload):
    raise RuntimeError("Datenbank nicht erreichbar")


class BackoffTests(TestCase):
    def test_quadratic_backoff(self):
        self.assertEqual(backoff_seconds(1), 30)
        self.assertEqual(backoff_seconds(2), 120)
        self.assertEqual(backoff_seconds(3), 270)
        self.assertEqual(backoff_seconds(2, base_seconds=10), 40)

    @override_settings(BILLING_JOB_BACKOFF_BASE_SECONDS=5)
    def test_base_from_settings(self):
        self.assertEqual(backoff_seconds(2), 20)


class JobQueueTests(TestCase):
    def test_enqueue_validates_type(self):
        with self.assertRaises(ValidationError):
            enqueue("kaffee_kochen", {})

    def test_payload_shape(self):
        job = enqueue(Job.JobType.REPORT_GENERATION, {"organizationId": 1}, max_retries=5)
        payload = job.to_payload()

        self.assertEqual(payload["jobType"], "report_generation")
        self.assertEqual(payload["payload"], {"organizationId": 1})
        self.assertEqual(payload["retryCount"], 0)
        self.assertEqual(payload["maxRetries"], 5)
        self.assertIsNotNone(payload["scheduledFor"])

    def test_empty_queue(self):
        self.assertIsNone(claim_next_job("worker-1"))
        summary = JobWorker({}, worker_id="worker-1").run_once()
        self.assertEqual(summary.processed, 0)

    def test_claim_skips_future_jobs(self):
        now = timezone.now()
        enqueue(Job.JobType.DUNNING_RUN, {}, scheduled_for=now + timedelta(minutes=5))
        due = enqueue(Job.JobType.DUNNING_RUN, {}, scheduled_for=now - timedelta(minutes=5))

        job = claim_next_job("worker-1", now=now)

        self.assertEqual(job.pk, due.pk)
        self.assertEqual(job.status, Job.Status.PROCESSING)
        self.assertEqual(job.locked_by, "worker-1")
        self.assertIsNone(claim_next_job("worker-1", now=now))

    def test_successful_job_stores_result(self):
        job = enqueue(Job.JobType.REPORT_GENERATION, {})
        worker = JobWorker({Job.JobType.REPORT_GENERATION: lambda payload: {"ok": True}}, worker_id="w")

        summary = worker.run_once()
        job.refresh_from_db()

        self.assertEqual(summary.completed, 1)
        self.assertEqual(job.status, Job.Status.COMPLETED)
        self.assertEqual(job.result, {"ok": True})
        self.assertIsNotNone(job.completed_at)
        self.assertEqual(job.locked_by, "")

    def test_retry_with_backoff_until_failed(self):
        job = enqueue(Job.JobType.SEPA_EXPORT, {}, max_retries=3)
        worker = JobWorker({Job.JobType.SEPA_EXPORT: _failing_handler}, worker_id="w")
        now = timezone.now()

        self.assertEqual(worker.run_once(now=now).retried, 1)
        job.refresh_from_db()
        self.assertEqual(job.status, Job.Status.RETRYING)
        self.assertEqual(job.retry_count, 1)
        self.assertEqual(job.scheduled_for, now + timedelta(seconds=30))
        self.assertIn("Datenbank nicht erreichbar", job.error)

        self.assertEqual(worker.run_once(now=now + timedelta(seconds=29)).processed, 0)

        now = now + timedelta(seconds=30)
        worker.run_once(now=now)
        job.refresh_from_db()
        self.assertEqual(job.retry_count, 2)
        self.assertEqual(job.scheduled_for, now + timedelta(seconds=120))

        now = now + timedelta(seconds=120)
        self.assertEqual(worker.run_once(now=now).failed, 1)
        job.refresh_from_db()
        self.assertEqual(job.status, Job.Status.FAILED)
        self.assertEqual(job.retry_count, 3)
        self.assertEqual(job.failed_at, now)
        self.assertIn("nach 3 Versuchen abgebrochen", job.error)
        self.assertEqual(worker.run_once(now=now + timedelta(days=1)).processed, 0)

    def test_missing_handler_counts_as_failure(self):
        job = enqueue(Job.JobType.SEPA_EXPORT, {}, max_retries=1)
        JobWorker({}, worker_id="w").run_once()
        job.refresh_from_db()

        self.assertEqual(job.status, Job.Status.FAILED)
        self.assertIn("Kein Handler", job.error)

    def test_max_jobs_per_run(self):
        for _ in range(3):
            enqueue(Job.JobType.REPORT_GENERATION, {})
        worker = JobWorker({Job.JobType.REPORT_GENERATION: lambda payload: None}, worker_id="w", max_jobs=2)

        self.assertEqual(worker.run_once().processed, 2)
        self.assertEqual(Job.objects.filter(status=Job.Status.PENDING).count(), 1)


class DefaultHandlerTests(TestCase):
    def setUp(self):
        self.property = create_property()
        self.tenant = create_tenant(create_unit(self.property), iban="AT61 1904 3002 3457 3201")

    def test_billing_run_job(self):
        enqueue(Job.JobType.BILLING_RUN, {"month": "2026-02", "organizationId": self.property.organization_id})
        out = StringIO()
        call_command("process_jobs", worker_id="test-worker", stdout=out)

        job = Job.objects.get()
        self.assertIn("completed: 1", out.getvalue())
        self.assertEqual(job.status, Job.Status.COMPLETED)
        self.assertEqual(job.result["created"], 1)
        self.assertTrue(MonthlyInvoice.objects.filter(tenant=self.tenant, year=2026, month=2).exists())

    def test_report_and_sepa_jobs(self):
        enqueue(Job.JobType.BILLING_RUN, {"month": "2026-02"})
        enqueue(Job.JobType.REPORT_GENERATION, {"today": "2026-03-01"})
        enqueue(Job.JobType.SEPA_EXPORT, {"collectionDate": "2026-03-01"})
        JobWorker(worker_id="w").run_once()

        report = Job.objects.get(job_type=Job.JobType.REPORT_GENERATION)
        sepa = Job.objects.get(job_type=Job.JobType.SEPA_EXPORT)
        self.assertEqual(report.result["balances"][0]["saldo"], "400.00")
        self.assertEqual(sepa.result["items"][0]["iban"], "AT611904300234573201")
        self.assertEqual(sepa.result["total"], "400.00")

    def test_settlement_job(self):
        enqueue(Job.JobType.SETTLEMENT_CALCULATION, {"propertyId": self.property.pk, "year": 2025, "key": "fixed"})
        JobWorker(worker_id="w").run_once()

        job = Job.objects.get()
        self.assertEqual(job.status, Job.Status.COMPLETED)
        self.assertEqual(Settlement.objects.get(property=self.property, year=2025).status, Settlement.Status.BERECHNET)
        self.assertEqual(job.result["total_expense"], "0.00")

    def test_invalid_payload_is_retried(self):
        enqueue(Job.JobType.SETTLEMENT_CALCULATION, {"propertyId": 987654, "year": 2025})
        JobWorker(worker_id="w").run_once()

        job = Job.objects.get()
        self.assertEqual(job.status, Job.Status.RETRYING)
        self.assertIn("987654", job.error)

    def test_bulk_upsert_job(self):
        enqueue(Job.JobType.BILLING_RUN, {"month": "2026-02"})
        JobWorker(worker_id="w").run_once()
        invoice = MonthlyInvoice.objects.get()
        enqueue(
            Job.JobType.BULK_INVOICE_UPSERT,
            {
                "runId": "run-42",
                "rows": [
                    {
                        "invoice_id": invoice.pk,
                        "line_type": "wasser",
                        "description": "Wasserzähler Nachverrechnung",
                        "amount": "12.34",
                    }
                ],
            },
        )
        JobWorker(worker_id="w").run_once()

        job = Job.objects.get(job_type=Job.JobType.BULK_INVOICE_UPSERT)
        self.assertEqual(job.result["inserted"], 1)
        self.assertEqual(job.result["run_id"], "run-42")
        self.assertEqual(invoice.lines.get(line_type="wasser").amount, Decimal("12.34"))
