"""
metrics.py - Controller metrics for Prometheus scraping
"""
from prometheus_client import Counter, Histogram, Gauge, generate_latest
from functools import wraps
import time

request_count = Counter(
    'rollout_requests_total',
    'Total admin API requests',
    ['method', 'endpoint', 'status']
)

request_duration = Histogram(
    'rollout_request_duration_seconds',
    'Admin API request duration',
    ['method', 'endpoint']
)

interactions_recorded = Counter(
    'rollout_interactions_total',
    'User interactions folded into deployment metrics',
    ['type']
)

interaction_failures = Counter(
    'rollout_interaction_failures_total',
    'Interactions that could not be recorded'
)

rollbacks_executed = Counter(
    'rollout_rollbacks_total',
    'Rollbacks executed',
    ['trigger']  # 'automatic' or 'manual'
)

rollback_step_failures = Counter(
    'rollout_rollback_step_failures_total',
    'Rollback steps that failed and were skipped',
    ['action']
)

monitor_ticks = Counter(
    'rollout_monitor_ticks_total',
    'Health monitor evaluations',
    ['outcome']  # 'healthy', 'breach', 'error'
)

active_monitors = Gauge(
    'rollout_active_monitors',
    'Number of running health monitor loops'
)

circuit_breaker_state = Gauge(
    'rollout_circuit_breaker_state',
    'Circuit breaker state (0=closed, 1=open, 2=half-open)',
    ['service']
)


def track_request(method: str, endpoint: str):
    """Decorator to track request metrics"""
    def decorator(func):
        @wraps(func)
        async def wrapper(*args, **kwargs):
            start = time.time()
            status = 200
            try:
                return await func(*args, **kwargs)
            except Exception as e:
                status = getattr(e, "status_code", 500)
                raise
            finally:
                duration = time.time() - start
                request_count.labels(method, endpoint, status).inc()
                request_duration.labels(method, endpoint).observe(duration)
        return wrapper
    return decorator


def get_metrics():
    """Get Prometheus metrics"""
    return generate_latest()
