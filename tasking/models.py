from django.db import models

PRIORITY_CHOICES = [("high", "High"), ("medium", "Medium"), ("low", "Low")]
STATUS_CHOICES = [
    ("pending", "Pending"),
    ("in-progress", "In progress"),
    ("completed", "Completed"),
    ("cancelled", "Cancelled"),
]
ROLE_CHOICES = [("manager", "Manager"), ("supervisor", "Supervisor")]


class Site(models.Model):
    id          = models.BigAutoField(primary_key=True)
    name        = models.CharField(max_length=200)
    client_name = models.CharField(max_length=200)


class StaffDeployment(models.Model):
    id    = models.BigAutoField(primary_key=True)
    site  = models.ForeignKey(
        Site,
        on_delete=models.CASCADE,
        related_name="staff_deployment"
    )
    role  = models.CharField(max_length=100)
    count = models.PositiveSmallIntegerField(default=0)


class Assignee(models.Model):
    id         = models.BigAutoField(primary_key=True)
    name       = models.CharField(max_length=100)
    role       = models.CharField(max_length=20, choices=ROLE_CHOICES)
    site       = models.ForeignKey(
        Site,
        null=True, blank=True,
        on_delete=models.SET_NULL,
        related_name="assignees"
    )
    department = models.CharField(max_length=100, blank=True, default="")


class Task(models.Model):
    """A task template (no assignee, no site) or one concrete assignment of it."""

    id               = models.BigAutoField(primary_key=True)
    title            = models.CharField(max_length=200)
    description      = models.TextField()
    priority         = models.CharField(max_length=10, choices=PRIORITY_CHOICES, default="medium")
    task_type        = models.CharField(max_length=50, default="routine")
    status           = models.CharField(max_length=20, choices=STATUS_CHOICES, default="pending")
    deadline         = models.DateTimeField()
    due_date_time    = models.DateTimeField()
    assignee         = models.ForeignKey(
        Assignee,
        null=True, blank=True,
        on_delete=models.SET_NULL,
        related_name="tasks"
    )
    assigned_to_name = models.CharField(max_length=100, blank=True, default="")
    site             = models.ForeignKey(
        Site,
        null=True, blank=True,
        on_delete=models.SET_NULL,
        related_name="tasks"
    )
    site_name        = models.CharField(max_length=200, blank=True, default="")
    client_name      = models.CharField(max_length=200, blank=True, default="")
    created_by       = models.CharField(max_length=100, default="system")
    created_at       = models.DateTimeField(auto_now_add=True)
    updated_at       = models.DateTimeField(auto_now=True)

    class Meta:
        indexes = [
            models.Index(fields=["assignee"]),
            models.Index(fields=["site"]),
            models.Index(fields=["status"]),
            models.Index(fields=["created_at"]),
        ]


class Attachment(models.Model):
    id           = models.BigAutoField(primary_key=True)
    task         = models.ForeignKey(
        Task,
        on_delete=models.CASCADE,
        related_name="attachments"
    )
    filename     = models.CharField(max_length=255)
    url          = models.CharField(max_length=500)
    storage_name = models.CharField(max_length=500, blank=True, default="")
    size         = models.PositiveIntegerField(default=0)
    content_type = models.CharField(max_length=100, default="application/octet-stream")
    uploaded_at  = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["id"]


class HourlyUpdate(models.Model):
    id           = models.BigAutoField(primary_key=True)
    task         = models.ForeignKey(
        Task,
        on_delete=models.CASCADE,
        related_name="hourly_updates"
    )
    content      = models.TextField()
    submitted_by = models.CharField(max_length=100)
    timestamp    = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["timestamp", "id"]
