"""
Prometheus Metrics Server

Exposes write-path, retry-queue and listener metrics via HTTP endpoint for
Prometheus scraping.
"""

import asyncio
import json
from typing import Optional, Callable, Dict, Any
from aiohttp import web
from prometheus_client import (
    Counter, Gauge, Histogram, Info,
    generate_latest, CONTENT_TYPE_LATEST
)

from .logging_config import get_logger


# Write path
apply_outcomes_counter = Counter(
    'cachesync_apply_outcomes_total',
    'Cache write decisions by outcome',
    ['status']
)

failure_signals_counter = Counter(
    'cachesync_failure_signals_total',
    'Failure signals raised by reason code',
    ['reason_code']
)

ledger_read_errors_counter = Counter(
    'cachesync_ledger_read_errors_total',
    'Total number of failed authoritative ledger reads'
)

# Retry queue
job_transitions_counter = Counter(
    'cachesync_job_transitions_total',
    'Retry job state transitions',
    ['from_status', 'to_status']
)

deadletters_counter = Counter(
    'cachesync_deadletters_total',
    'Jobs moved to dead-letter by reason code',
    ['reason_code']
)

queue_depth_gauge = Gauge(
    'cachesync_queue_depth',
    'Retry jobs by status',
    ['status']
)

oldest_pending_age_gauge = Gauge(
    'cachesync_oldest_pending_age_seconds',
    'Age of the oldest pending retry job'
)

deadletter_rate_gauge = Gauge(
    'cachesync_deadletter_rate',
    'Share of retry jobs that ended in dead-letter (0.0 to 1.0)'
)

time_to_repair_histogram = Histogram(
    'cachesync_time_to_repair_seconds',
    'Time from signal to successful retry',
    buckets=(1, 5, 15, 30, 60, 300, 900, 3600, 14400)
)

retry_attempt_latency_histogram = Histogram(
    'cachesync_retry_attempt_seconds',
    'Duration of a single retry attempt'
)

# Leases
lease_acquisitions_counter = Counter(
    'cachesync_lease_acquisitions_total',
    'Lease requests by result',
    ['result']
)

# Signal listener
listener_connected_gauge = Gauge(
    'cachesync_listener_connected',
    'Whether the signal listener has a live subscription (0 or 1)'
)

listener_last_block_gauge = Gauge(
    'cachesync_listener_last_block',
    'Last block processed by the signal listener'
)

# Service info
service_info = Info(
    'cachesync_service',
    'Information about the cachesync service'
)

start_time_gauge = Gauge(
    'cachesync_start_time_seconds',
    'Unix timestamp when the service started'
)


class MetricsServer:
    """
    HTTP server that exposes Prometheus metrics.

    Serves metrics at /metrics and a JSON health snapshot at /health.
    """

    def __init__(self, port: int = 8000,
                 health_provider: Optional[Callable[[], Dict[str, Any]]] = None):
        self.port = port
        self.health_provider = health_provider
        self.logger = get_logger("metrics_server")
        self.app: Optional[web.Application] = None
        self.runner: Optional[web.AppRunner] = None
        self.site: Optional[web.TCPSite] = None
        self._running = False

    def build_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get('/metrics', self.handle_metrics)
        app.router.add_get('/health', self.handle_health)
        return app

    async def start(self):
        """Start the metrics HTTP server"""
        try:
            self.logger.info(f"Starting metrics server on port {self.port}...")

            self.app = self.build_app()

            self.runner = web.AppRunner(self.app)
            await self.runner.setup()

            self.site = web.TCPSite(self.runner, '0.0.0.0', self.port)
            await self.site.start()

            self._running = True
            self.logger.info(f"Metrics server started on http://0.0.0.0:{self.port}/metrics")

        except Exception as e:
            self.logger.error(f"Failed to start metrics server: {e}", exc_info=True)
            raise

    async def stop(self):
        """Stop the metrics HTTP server"""
        try:
            self.logger.info("Stopping metrics server...")
            self._running = False

            if self.site:
                await self.site.stop()

            if self.runner:
                await self.runner.cleanup()

            self.logger.info("Metrics server stopped")

        except Exception as e:
            self.logger.error(f"Error stopping metrics server: {e}", exc_info=True)

    async def handle_metrics(self, request: web.Request) -> web.Response:
        """Handle /metrics endpoint - return Prometheus metrics"""
        try:
            metrics_output = generate_latest()

            return web.Response(
                body=metrics_output,
                headers={'Content-Type': CONTENT_TYPE_LATEST}
            )

        except Exception as e:
            self.logger.error(f"Error generating metrics: {e}", exc_info=True)
            return web.Response(
                text=f"Error generating metrics: {e}",
                status=500
            )

    async def handle_health(self, request: web.Request) -> web.Response:
        """Handle /health endpoint"""
        if self.health_provider is None:
            return web.Response(text="OK", status=200)

        try:
            # Provider hits the database; keep it off the event loop
            snapshot = await asyncio.to_thread(self.health_provider)
        except Exception as e:
            self.logger.error(f"Health check failed: {e}", exc_info=True)
            return web.json_response({'status': 'error', 'error': str(e)}, status=503)

        status = 200 if snapshot.get('status', 'ok') == 'ok' else 503
        return web.json_response(snapshot, status=status, dumps=lambda o: json.dumps(o, default=str))

    @staticmethod
    def record_apply(status: str):
        """Count one write decision"""
        apply_outcomes_counter.labels(status=status).inc()

    @staticmethod
    def record_failure_signal(reason_code: str):
        failure_signals_counter.labels(reason_code=reason_code).inc()

    @staticmethod
    def increment_ledger_read_errors():
        ledger_read_errors_counter.inc()

    @staticmethod
    def record_job_transition(from_status: str, to_status: str):
        job_transitions_counter.labels(from_status=from_status, to_status=to_status).inc()

    @staticmethod
    def record_deadletter(reason_code: str):
        deadletters_counter.labels(reason_code=reason_code).inc()

    @staticmethod
    def record_lease(acquired: bool):
        lease_acquisitions_counter.labels(result='granted' if acquired else 'denied').inc()

    @staticmethod
    def update_queue_depth(depth: Dict[str, int]):
        """Update queue depth gauges from a status -> count map"""
        for status, count in depth.items():
            queue_depth_gauge.labels(status=status).set(count)

    @staticmethod
    def update_oldest_pending_age(seconds: float):
        oldest_pending_age_gauge.set(seconds)

    @staticmethod
    def update_deadletter_rate(rate: float):
        deadletter_rate_gauge.set(rate)

    @staticmethod
    def observe_time_to_repair(seconds: float):
        time_to_repair_histogram.observe(seconds)

    @staticmethod
    def observe_retry_latency(seconds: float):
        retry_attempt_latency_histogram.observe(seconds)

    @staticmethod
    def update_listener(connected: bool, last_block: Optional[int] = None):
        listener_connected_gauge.set(1 if connected else 0)
        if last_block is not None:
            listener_last_block_gauge.set(last_block)

    @staticmethod
    def set_service_info(network: str, chain_id: int, version: str, worker_id: str):
        """Set service information"""
        service_info.info({
            'network': network,
            'chain_id': str(chain_id),
            'version': version,
            'worker_id': worker_id
        })

    @staticmethod
    def set_start_time(timestamp: float):
        """Set service start time"""
        start_time_gauge.set(timestamp)
