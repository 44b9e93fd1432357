"""
Processing Module.

Batched, priority-ordered job execution under a concurrency cap.
"""

from .job_queue import ProcessingQueue, QueueJob, QueueMetrics, JobStatus

__all__ = ['ProcessingQueue', 'QueueJob', 'QueueMetrics', 'JobStatus']
