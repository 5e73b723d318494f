"""External job provider client, job references and the reconciliation loop."""

from .provider import ExternalJobProvider, JobStatus, JobStatusReport, RunPodProvider
from .job_refs import ExternalJobRef, ExternalJobRefStore
from .dispatcher import CancelOutcome, CancelResult, GenerationDispatcher
from .service import JobReconciler, ReconcileAction, ReconcileSummary

__all__ = [
    "ExternalJobProvider",
    "JobStatus",
    "JobStatusReport",
    "RunPodProvider",
    "ExternalJobRef",
    "ExternalJobRefStore",
    "CancelOutcome",
    "CancelResult",
    "GenerationDispatcher",
    "JobReconciler",
    "ReconcileAction",
    "ReconcileSummary",
]
