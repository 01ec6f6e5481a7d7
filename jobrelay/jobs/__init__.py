"""Job submission, polling and reconciliation."""

from jobrelay.jobs.client import AsyncJobResolution, JobClient, Submission
from jobrelay.jobs.models import JobReference, JobState
from jobrelay.jobs.queue import QueueStatus, QueueStatusMonitor
from jobrelay.jobs.reconciler import JobOutcome, JobReconciler

__all__ = ["AsyncJobResolution", "JobClient", "JobOutcome", "JobReconciler", "JobReference", "JobState", "QueueStatus", "QueueStatusMonitor", "Submission"]
