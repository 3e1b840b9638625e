"""Job workers and schedulers for asynchronous generation."""

from atelier.workers.creation_worker import run_creation_job, run_trial_job
from atelier.workers.dispatch import dispatch_job, job_handler
from atelier.workers.landscape_worker import run_landscape_job
from atelier.workers.scheduler import BrokerScheduler, LocalScheduler, build_scheduler

__all__ = [
    "run_creation_job",
    "run_trial_job",
    "run_landscape_job",
    "dispatch_job",
    "job_handler",
    "BrokerScheduler",
    "LocalScheduler",
    "build_scheduler",
]
