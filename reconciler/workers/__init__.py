"""Background workers for async processing."""
from .retry_worker import RetryWorker, run_retry_worker

__all__ = ["RetryWorker", "run_retry_worker"]
