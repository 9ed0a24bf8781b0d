"""
Monitoring & Observability
Request metrics for agent runs, tool calls and delegations, plus health checks.
"""

import time
import logging
from typing import Dict, Optional, Callable
from collections import defaultdict
import threading

try:
    from prometheus_client import (
        Counter, Histogram,
        start_http_server
    )
    PROMETHEUS_AVAILABLE = True
except ImportError:
    PROMETHEUS_AVAILABLE = False


class MetricsCollector:
    """
    Metrics collection.

    Tracks:
    - Request counts and latencies per component/operation
    - Error rates
    - Run retries
    """

    def __init__(self, enable_prometheus: bool = True):
        self.enable_prometheus = enable_prometheus and PROMETHEUS_AVAILABLE

        self.metrics = defaultdict(lambda: {
            'count': 0,
            'errors': 0,
            'total_latency': 0,
            'min_latency': float('inf'),
            'max_latency': 0
        })
        self.retries = defaultdict(int)

        self.lock = threading.Lock()

        self.request_history = []
        self.error_logs = []
        self.max_history = 1000

        if self.enable_prometheus:
            self._init_prometheus()

    def _init_prometheus(self):
        """Initialize Prometheus metrics."""
        self.request_counter = Counter(
            'orbit_requests_total',
            'Total requests',
            ['component', 'operation']
        )

        self.request_latency = Histogram(
            'orbit_request_latency_seconds',
            'Request latency',
            ['component', 'operation']
        )

        self.error_counter = Counter(
            'orbit_errors_total',
            'Total errors',
            ['component', 'operation', 'error_type']
        )

        self.retry_counter = Counter(
            'orbit_run_retries_total',
            'Agent run retries after transient errors',
            ['agent_id']
        )

    def record_request(self, component: str, operation: str,
                       latency: float, success: bool = True,
                       error_type: Optional[str] = None):
        """Record a request with metrics."""
        key = f"{component}.{operation}"

        with self.lock:
            entry = self.metrics[key]
            entry['count'] += 1
            entry['total_latency'] += latency
            entry['min_latency'] = min(entry['min_latency'], latency)
            entry['max_latency'] = max(entry['max_latency'], latency)
            if not success:
                entry['errors'] += 1

            self.request_history.append({
                'component': component,
                'operation': operation,
                'latency': latency,
                'success': success,
                'error_type': error_type,
                'timestamp': time.time()
            })
            if len(self.request_history) > self.max_history:
                self.request_history.pop(0)

            if not success:
                self.error_logs.append({
                    'component': component,
                    'operation': operation,
                    'error': error_type,
                    'timestamp': time.time()
                })
                if len(self.error_logs) > self.max_history:
                    self.error_logs.pop(0)

        if self.enable_prometheus:
            self.request_counter.labels(component=component, operation=operation).inc()
            self.request_latency.labels(component=component, operation=operation).observe(latency)
            if not success:
                self.error_counter.labels(
                    component=component,
                    operation=operation,
                    error_type=error_type or 'unknown'
                ).inc()

    def record_retry(self, agent_id: str):
        with self.lock:
            self.retries[agent_id] += 1
        if self.enable_prometheus:
            self.retry_counter.labels(agent_id=agent_id).inc()

    def get_metrics(self) -> Dict:
        """Get current metrics snapshot."""
        with self.lock:
            return dict(self.metrics)

    def start_server(self, port: int = 9090):
        """Start Prometheus metrics server."""
        if self.enable_prometheus:
            start_http_server(port)
            logging.info(f"Metrics server started on port {port}")

    def get_summary(self) -> Dict:
        """Get high-level system summary."""
        with self.lock:
            history = list(self.request_history)
            total_errors = len(self.error_logs)
        if not history:
            return {"status": "idle"}

        recent = history[-100:]
        success_rate = sum(1 for r in recent if r['success']) / len(recent)
        avg_latency = sum(r['latency'] for r in recent) / len(recent)

        return {
            "status": "healthy" if success_rate > 0.9 else "degraded",
            "success_rate": success_rate,
            "avg_latency": avg_latency,
            "total_requests": len(history),
            "total_errors": total_errors
        }


class HealthCheck:
    """Health check registry for async or sync checks."""

    def __init__(self):
        self.checks = {}

    def register(self, name: str, check_func: Callable):
        self.checks[name] = check_func

    async def run_checks(self) -> Dict:
        results = {}
        for name, check_func in self.checks.items():
            try:
                result = check_func()
                if hasattr(result, '__await__'):
                    result = await result
                results[name] = {
                    'status': 'healthy' if result else 'unhealthy',
                    'success': bool(result)
                }
            except Exception as e:
                results[name] = {'status': 'error', 'error': str(e)}

        all_healthy = all(r['status'] == 'healthy' for r in results.values())
        return {
            'status': 'healthy' if all_healthy else 'unhealthy',
            'checks': results
        }


_metrics = None


def get_metrics() -> MetricsCollector:
    """Get global metrics collector."""
    global _metrics
    if _metrics is None:
        _metrics = MetricsCollector()
    return _metrics
