from django.core.management.base import BaseCommand, CommandError

from billing.services.job_queue import JobWorker


class Command(BaseCommand):
    help = "Arbeitet fällige Hintergrundaufträge ab (Wiederholung mit quadratischem Backoff)."

    def add_arguments(self, parser):
        parser.add_argument(
            "--max-jobs",
            type=int,
            help="Maximale Anzahl Aufträge pro Lauf (Default: BILLING_JOB_MAX_JOBS_PER_RUN).",
        )
        parser.add_argument(
            "--worker-id",
            type=str,
            help="Kennung des Workers für locked_by.",
        )

    def handle(self, *args, **options):
        max_jobs = options.get("max_jobs")
        if max_jobs is not None and max_jobs < 1:
            raise CommandError("--max-jobs muss mindestens 1 sein.")

        worker = JobWorker(worker_id=options.get("worker_id"), max_jobs=max_jobs)
        summary = worker.run_once()

        self.stdout.write(f"worker: {worker.worker_id}")
        self.stdout.write(f"processed: {summary.processed}")
        self.stdout.write(f"completed: {summary.completed}")
        self.stdout.write(f"retried: {summary.retried}")
        self.stdout.write(f"failed: {summary.failed}")
        if not summary.processed:
            self.stdout.write(self.style.SUCCESS("Keine fälligen Aufträge."))
