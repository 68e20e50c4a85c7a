from django.db import models


class Role(models.TextChoices):
    ELECTRICIAN = "Electrician"
    FITTER      = "Fitter"
    PAINTER     = "Painter"
    HELPER      = "Helper"


# Role -> record field holding that role's headcount
ROLE_FIELDS = {
    Role.ELECTRICIAN.value: "electrician",
    Role.FITTER.value:      "fitter",
    Role.PAINTER.value:     "painter",
    Role.HELPER.value:      "helper",
}

ROLE_CODES = {
    Role.ELECTRICIAN.value: "E",
    Role.FITTER.value:      "F",
    Role.PAINTER.value:     "P",
    Role.HELPER.value:      "H",
}


class Shift(models.TextChoices):
    DAY   = "Day Shift"
    NIGHT = "Night Shift"


class AttendanceShift(models.TextChoices):
    DAY   = "Day"
    NIGHT = "Night"


# Attendance is logged as Day/Night, records carry the full shift label
RECORD_SHIFTS = {
    AttendanceShift.DAY.value:   Shift.DAY.value,
    AttendanceShift.NIGHT.value: Shift.NIGHT.value,
}


class RecordStatus(models.TextChoices):
    PENDING   = "PENDING"
    COMPLETED = "COMPLETED"


class Employee(models.Model):
    id            = models.BigAutoField(primary_key=True)
    employee_code = models.CharField(max_length=32, unique=True)
    name          = models.CharField(max_length=100)
    role          = models.CharField(max_length=20, choices=Role.choices)
    is_active     = models.BooleanField(default=True)
    created_at    = models.DateTimeField(auto_now_add=True)
    updated_at    = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["employee_code"]
        unique_together = ("name", "role")

    def __str__(self):
        return f"{self.employee_code} {self.name}"


class LiveRecordManager(models.Manager):
    def get_queryset(self):
        return super().get_queryset().filter(deleted_at__isnull=True)


class ProductionRecord(models.Model):
    id                  = models.BigAutoField(primary_key=True)
    serial_no           = models.CharField(max_length=16, null=True, blank=True)
    status              = models.CharField(
        max_length=10,
        choices=RecordStatus.choices,
        default=RecordStatus.PENDING,
    )
    supervisor          = models.CharField(max_length=100)
    shift               = models.CharField(max_length=20, choices=Shift.choices)
    date                = models.DateField(null=True, blank=True, db_index=True)
    in_time             = models.DateTimeField(null=True, blank=True)
    out_time            = models.DateTimeField(null=True, blank=True)
    bin_no              = models.CharField(max_length=50)
    model_no            = models.CharField(max_length=50)
    chassis_no          = models.CharField(max_length=50)
    vehicle_type        = models.CharField(max_length=50)
    # Written only by the split-count reconciler
    electrician         = models.DecimalField(max_digits=6, decimal_places=2, default=0)
    fitter              = models.DecimalField(max_digits=6, decimal_places=2, default=0)
    painter             = models.DecimalField(max_digits=6, decimal_places=2, default=0)
    helper              = models.DecimalField(max_digits=6, decimal_places=2, default=0)
    production_incharge = models.CharField(max_length=100, blank=True, default="")
    remarks             = models.TextField(null=True, blank=True)
    sr_no_vehicle_count = models.PositiveIntegerField(null=True, blank=True)
    hours               = models.FloatField(null=True, blank=True)
    completed_at        = models.DateTimeField(null=True, blank=True)
    deleted_at          = models.DateTimeField(null=True, blank=True, db_index=True)
    created_at          = models.DateTimeField(auto_now_add=True)
    updated_at          = models.DateTimeField(auto_now=True)

    # Soft-deleted records are only reachable through all_objects
    objects     = LiveRecordManager()
    all_objects = models.Manager()

    class Meta:
        indexes = [
            models.Index(fields=["date", "shift"]),
            models.Index(fields=["status", "updated_at"]),
        ]

    def __str__(self):
        return f"{self.serial_no or self.pk} {self.chassis_no}"


class EmployeeAssignment(models.Model):
    id          = models.BigAutoField(primary_key=True)
    record      = models.ForeignKey(
        ProductionRecord,
        on_delete=models.CASCADE,
        related_name="assignments"
    )
    employee    = models.ForeignKey(
        Employee,
        on_delete=models.CASCADE,
        related_name="assignments"
    )
    split_count = models.FloatField(default=1.0)

    class Meta:
        unique_together = ("record", "employee")
        indexes = [
            models.Index(fields=["employee"]),
        ]


class ScopeLock(models.Model):
    """One row per (date, shift); row-locked while that scope reconciles."""
    id    = models.BigAutoField(primary_key=True)
    date  = models.DateField()
    shift = models.CharField(max_length=20, choices=Shift.choices)

    class Meta:
        unique_together = ("date", "shift")


class EmployeeAttendance(models.Model):
    id         = models.BigAutoField(primary_key=True)
    employee   = models.ForeignKey(
        Employee,
        on_delete=models.CASCADE,
        related_name="attendance"
    )
    date       = models.DateField()
    shift      = models.CharField(max_length=10, choices=AttendanceShift.choices)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        unique_together = ("employee", "date", "shift")
        indexes = [
            models.Index(fields=["date", "shift"]),
        ]
