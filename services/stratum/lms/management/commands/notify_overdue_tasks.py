"""Notify students about course tasks that slipped past their due date."""

from __future__ import annotations

from django.core.management.base import BaseCommand
from django.utils import timezone

from lms.services.notifications import create_overdue_task_notifications


class Command(BaseCommand):
    help = "Create one high-priority overdue_task notification per overdue, un-notified student task."

    def add_arguments(self, parser):
        parser.add_argument(
            "--dry-run",
            action="store_true",
            help="Report candidate count without creating notifications.",
        )

    def handle(self, *args, **opts):
        dry_run = bool(opts["dry_run"])
        now = timezone.now()
        count = create_overdue_task_notifications(now, dry_run=dry_run)
        self.stdout.write(f"Checked at: {now.isoformat()}")
        if dry_run:
            self.stdout.write(self.style.WARNING(f"[dry-run] Would notify overdue tasks: {count}"))
            return
        self.stdout.write(self.style.SUCCESS(f"Notified overdue tasks: {count}"))
