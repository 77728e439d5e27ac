"""Scheduled-post lifecycle and recurring job scheduling."""

from content_pipeline.scheduling.engine import ScheduledPostEngine
from content_pipeline.scheduling.job_scheduler import HealthSignal, JobRegistration, JobScheduler
from content_pipeline.scheduling.jobs import PipelineJobs

__all__ = [
    "ScheduledPostEngine",
    "HealthSignal",
    "JobRegistration",
    "JobScheduler",
    "PipelineJobs",
]
