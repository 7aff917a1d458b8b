from prometheus_client import Counter, Histogram, Gauge
import time
from functools import wraps
from typing import Callable
import logging

logger = logging.getLogger(__name__)

# Metrics
STAGE_PROCESSING_TIME = Histogram(
    'invoice_stage_seconds',
    'Time spent in each external processing stage',
    ['stage']
)

ITEMS_PROCESSED = Counter(
    'invoice_items_total',
    'Total number of invoice items that reached a terminal state',
    ['outcome']
)

NORMALIZATION_RETRIES = Counter(
    'invoice_normalization_retries_total',
    'Total number of normalization attempts that were retried'
)

BATCH_FAILURES = Counter(
    'invoice_batch_failures_total',
    'Total number of batches aborted by an unexpected error'
)

ACTIVE_JOBS = Gauge(
    'invoice_active_jobs',
    'Number of processing jobs currently running'
)

def track_time(metric: Histogram, stage: str) -> Callable:
    def decorator(func: Callable) -> Callable:
        @wraps(func)
        async def wrapper(*args, **kwargs):
            start_time = time.monotonic()
            try:
                return await func(*args, **kwargs)
            except Exception as e:
                logger.debug(f"Error in {func.__name__} ({stage}): {str(e)}")
                raise
            finally:
                metric.labels(stage=stage).observe(time.monotonic() - start_time)
        return wrapper
    return decorator
