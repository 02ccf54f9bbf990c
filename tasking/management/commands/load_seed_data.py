import json
from pathlib import Path
from django.core.management.base import BaseCommand, CommandError
from django.db import transaction
from django.utils.dateparse import parse_datetime

from tasking.models import Assignee, Site, StaffDeployment, Task


class Command(BaseCommand):
    help = "Load demo sites, assignees and task templates from JSON files in seed_data/."

    def add_arguments(self, parser):
        parser.add_argument(
            "--truncate",
            action="store_true",
            help="Delete existing data before loading.",
        )
        parser.add_argument(
            "--dir",
            default="seed_data",
            help="Directory containing JSON files (default: seed_data).",
        )

    @transaction.atomic
    def handle(self, *args, **options):
        base_dir = Path(options["dir"]).resolve()

        # 1. optional clean
        if options["truncate"]:
            self.stdout.write("Deleting existing records…")
            Task.objects.all().delete()
            Assignee.objects.all().delete()
            StaffDeployment.objects.all().delete()
            Site.objects.all().delete()

        # 2. load json helpers
        def load_json(name):
            path = base_dir / f"{name}.json"
            if not path.exists():
                raise CommandError(f"{path} not found")
            with open(path) as f:
                return json.load(f)

        def when(value):
            parsed = parse_datetime(value) if value else None
            if parsed is None:
                raise CommandError(f"Invalid datetime: {value!r}")
            return parsed

        sites     = load_json("sites")
        assignees = load_json("assignees")
        tasks     = load_json("tasks")

        # 3. create records (bulk for speed)
        Site.objects.bulk_create(
            [Site(id=s["id"], name=s["name"], client_name=s["client_name"]) for s in sites],
            ignore_conflicts=True,
        )
        StaffDeployment.objects.bulk_create(
            [
                StaffDeployment(site_id=s["id"], role=d["role"], count=d["count"])
                for s in sites
                for d in s.get("staff_deployment", [])
            ]
        )
        Assignee.objects.bulk_create(
            [
                Assignee(
                    id=a["id"],
                    name=a["name"],
                    role=a["role"],
                    site_id=a.get("site_id"),
                    department=a.get("department", ""),
                )
                for a in assignees
            ],
            ignore_conflicts=True,
        )
        Task.objects.bulk_create(
            [
                Task(
                    id=t["id"],
                    title=t["title"],
                    description=t["description"],
                    priority=t.get("priority", "medium"),
                    task_type=t.get("task_type", "routine"),
                    status=t.get("status", "pending"),
                    deadline=when(t["deadline"]),
                    due_date_time=when(t.get("due_date_time") or t["deadline"]),
                    created_by=t.get("created_by", "system"),
                )
                for t in tasks
            ],
            ignore_conflicts=True,
        )

        self.stdout.write(
            self.style.SUCCESS(
                f"Loaded {len(sites)} sites, {len(assignees)} assignees, {len(tasks)} task templates"
            )
        )
