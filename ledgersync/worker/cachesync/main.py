"""
Service Orchestrator

Entry point for the cachesync service. Wires the cache store, retry queue,
lease coordinator, worker pool, signal listener and metrics server together,
and exposes the operator commands on the command line.
"""

import argparse
import asyncio
import json
import signal
import sys
import time
from pathlib import Path
from typing import Optional, List, Any

import structlog
from web3 import Web3

from .logging_config import init_logging, get_logger, log_health_metrics
from .config import CacheSyncConfig, init_config
from .database import init_database, init_redis, DatabaseManager, RedisManager
from .types import CacheSyncError, JobStatus
from .clock import Clock, SystemClock
from .auditor import ReconciliationAuditor
from .cache_store import VersionedCacheStore
from .retry_queue import RetryQueue
from .lease import LeaseCoordinator
from .ledger import Web3LedgerReader
from .resolver import StaticViewTargetResolver, RegistryViewTargetResolver, ViewTargetResolver
from .failure_signal import CachePusher
from .retry_worker import RetryWorker, RetryWorkerPool
from .signal_listener import SignalListener
from .alerts import AlertNotifier
from .admin import AdminService
from .metrics_server import MetricsServer

VERSION = "1.0.0"


class CacheSyncService:
    """
    Service orchestrator.

    Responsibilities:
    - Build every component from configuration
    - Run the worker pool, signal listener and metrics server
    - Periodically publish reconciliation health
    """

    def __init__(self, config: CacheSyncConfig, clock: Optional[Clock] = None,
                 db_manager: Optional[DatabaseManager] = None,
                 redis_manager: Optional[RedisManager] = None):
        self.logger = get_logger("cachesync")
        self.config = config
        self.clock = clock or SystemClock()
        self.db_manager = db_manager
        self.redis_manager = redis_manager

        self.web3: Optional[Web3] = None
        self.ledger = None
        self.resolver: Optional[ViewTargetResolver] = None
        self.alerts: Optional[AlertNotifier] = None
        self.auditor: Optional[ReconciliationAuditor] = None
        self.store: Optional[VersionedCacheStore] = None
        self.queue: Optional[RetryQueue] = None
        self.leases: Optional[LeaseCoordinator] = None
        self.pusher: Optional[CachePusher] = None
        self.workers: List[RetryWorker] = []
        self.pool: Optional[RetryWorkerPool] = None
        self.listener: Optional[SignalListener] = None
        self.admin: Optional[AdminService] = None
        self.metrics_server: Optional[MetricsServer] = None

        self._running = False
        self._shutdown_event = asyncio.Event()
        self._tasks: List[asyncio.Task] = []
        self._start_time = time.time()

    def build(self):
        """Create all components (no network I/O besides database and Redis)"""
        self.logger.info("Building cachesync components...")

        if self.db_manager is None:
            self.db_manager = init_database(self.config.database)
        if self.redis_manager is None:
            self.redis_manager = init_redis(self.config.redis, clock=self.clock)

        self.web3 = Web3(Web3.HTTPProvider(
            self.config.rpc.primary_http,
            request_kwargs={'timeout': self.config.rpc.request_timeout_seconds}
        ))

        contracts = self.config.contracts
        if contracts.collateral_manager and contracts.lending_engine:
            self.ledger = Web3LedgerReader(self.config.rpc, contracts)
        else:
            self.logger.warning("Ledger contracts not configured; retries will fail until they are")

        if contracts.registry and contracts.view_module_keys:
            self.resolver = RegistryViewTargetResolver(self.web3, contracts, clock=self.clock)
        else:
            self.resolver = StaticViewTargetResolver(contracts.view_targets)

        self.alerts = AlertNotifier.from_config(self.config.monitoring)
        self.auditor = ReconciliationAuditor(self.db_manager, clock=self.clock)
        self.store = VersionedCacheStore(self.db_manager, self.auditor, self.config.cache, clock=self.clock)
        self.queue = RetryQueue(self.db_manager, self.auditor, self.config.retry,
                                clock=self.clock, alerts=self.alerts)
        self.leases = LeaseCoordinator(self.redis_manager, clock=self.clock,
                                       default_ttl_seconds=self.config.retry.lease_ttl_seconds)
        self.pusher = CachePusher(self.store, self.queue, self.resolver, self.config.cache,
                                  ledger=self.ledger, alerts=self.alerts, clock=self.clock)

        self.workers = [
            RetryWorker(
                worker_id=f"{self.config.worker_id}-{i}",
                queue=self.queue,
                store=self.store,
                leases=self.leases,
                ledger=self.ledger,
                resolver=self.resolver,
                config=self.config.retry,
                cache_config=self.config.cache,
                clock=self.clock
            )
            for i in range(self.config.retry.worker_count)
        ]
        self.pool = RetryWorkerPool(self.workers, self.queue, self.config.retry)

        self.admin = AdminService(
            self.queue, self.workers[0], self.store, self.auditor,
            ledger=self.ledger, resolver=self.resolver,
            db_manager=self.db_manager, redis_manager=self.redis_manager
        )
        self.metrics_server = MetricsServer(port=self.config.monitoring.metrics_port,
                                            health_provider=self.admin.health)

        self.logger.info(
            "Components built",
            extra={
                "workers": len(self.workers),
                "redis": "fallback" if self.redis_manager.using_fallback else "connected"
            }
        )

    async def initialize(self):
        """Build components and verify dependencies"""
        try:
            self.build()

            if not self.db_manager.health_check():
                raise CacheSyncError("Database health check failed")

            if self.config.rpc.primary_ws:
                self.listener = SignalListener(self.config, self.queue, self.redis_manager, w3=self.web3)
            else:
                self.logger.warning("rpc.primary_ws not set; on-chain signal ingestion disabled")

            self.logger.info("cachesync initialization complete", extra={"status": "ready"})

        except Exception as e:
            self.logger.critical(f"Initialization failed: {e}", exc_info=True)
            raise

    async def start(self):
        """Start all background tasks and wait for shutdown"""
        try:
            self._running = True

            await self.metrics_server.start()
            MetricsServer.set_service_info(
                network=self.config.network_name,
                chain_id=self.config.chain_id,
                version=VERSION,
                worker_id=self.config.worker_id
            )
            MetricsServer.set_start_time(self._start_time)

            # Jobs held by a previous process go back to pending
            recovered = await asyncio.to_thread(self.queue.recover_expired)
            if recovered:
                self.logger.warning(f"Recovered {recovered} jobs from a previous run")

            await self.pool.start()
            if self.listener:
                await self.listener.start()

            self._tasks.append(asyncio.create_task(self.monitoring_loop()))

            self.logger.info("cachesync started")

            await self._shutdown_event.wait()

        except Exception as e:
            self.logger.critical(f"Service startup failed: {e}", exc_info=True)
            raise

    async def stop(self):
        """Stop the service gracefully"""
        self.logger.info("Stopping cachesync...")
        self._running = False

        if self.listener:
            await self.listener.stop()

        if self.pool:
            await self.pool.stop()

        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []

        if self.metrics_server:
            await self.metrics_server.stop()

        self._shutdown_event.set()
        self.logger.info("cachesync stopped")

    async def monitoring_loop(self, interval_seconds: float = 60.0):
        """Publish reconciliation health every interval"""
        self.logger.info("Starting monitoring loop...")

        while self._running:
            try:
                await asyncio.sleep(interval_seconds)
                metrics = await asyncio.to_thread(self.auditor.health_metrics)
                log_health_metrics(self.logger, metrics.to_dict())

                if self.redis_manager.using_fallback:
                    self.redis_manager.reconnect()

            except Exception as e:
                self.logger.error(f"Error in monitoring loop: {e}", exc_info=True)

        self.logger.info("Monitoring loop stopped")


# ============================================================================
# Command Line
# ============================================================================

def _print(data: Any):
    print(json.dumps(data, indent=2, default=str))


def _dump(model) -> Any:
    if model is None:
        return None
    if hasattr(model, 'model_dump'):
        return model.model_dump(mode='json')
    return model


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description='Ledger position cache consistency service')
    parser.add_argument('--config', type=Path, default=None, help='Path to config.yaml')
    sub = parser.add_subparsers(dest='command', required=True)

    sub.add_parser('run', help='Run workers, signal listener and metrics server')

    jobs = sub.add_parser('jobs', help='List retry jobs')
    jobs.add_argument('--status', choices=[s.value for s in JobStatus])
    jobs.add_argument('--subject')
    jobs.add_argument('--asset')
    jobs.add_argument('--view')
    jobs.add_argument('--limit', type=int, default=100)

    history = sub.add_parser('history', help='Audit trail of one job')
    history.add_argument('job_id')

    retry = sub.add_parser('retry', help='Force a retry now')
    retry.add_argument('job_id')
    retry.add_argument('--dry-run', action='store_true', help='Show the write without performing it')
    retry.add_argument('--operator', default='operator')

    ignore = sub.add_parser('ignore', help='Mark a job as ignored')
    ignore.add_argument('job_id')
    ignore.add_argument('--note', required=True)
    ignore.add_argument('--operator', required=True)

    replay = sub.add_parser('replay', help='Return a dead-lettered job to pending')
    replay.add_argument('job_id')
    replay.add_argument('--operator', required=True)

    cache = sub.add_parser('cache', help='Read a cache entry')
    cache.add_argument('subject')
    cache.add_argument('asset')
    cache.add_argument('--view')
    cache.add_argument('--fallback', action='store_true', help='Fall back to the ledger when stale')

    sync = sub.add_parser('sync', help='Resync a cache entry from the ledger')
    sync.add_argument('subject')
    sync.add_argument('asset')
    sync.add_argument('--view')
    sync.add_argument('--operator', required=True)

    sub.add_parser('health', help='Print reconciliation health')

    backfill = sub.add_parser('backfill', help='Ingest CacheUpdateFailed logs from a block range')
    backfill.add_argument('from_block', type=int)
    backfill.add_argument('to_block', type=int, nargs='?')

    return parser


async def run_service(config: CacheSyncConfig):
    logger = get_logger("main")
    service = CacheSyncService(config)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, lambda s=sig: (
            logger.info(f"Received signal {s}, initiating graceful shutdown..."),
            asyncio.ensure_future(service.stop())
        ))

    try:
        await service.initialize()
        await service.start()
    except Exception as e:
        logger.critical(f"Fatal error: {e}", exc_info=True)
        await service.stop()
        raise

    logger.info("cachesync shutdown complete")


def run_command(args, config: CacheSyncConfig) -> int:
    """Execute one operator subcommand"""
    service = CacheSyncService(config)
    service.build()
    admin = service.admin

    if args.command == 'jobs':
        status = JobStatus(args.status) if args.status else None
        jobs = admin.list_jobs(status=status, subject=args.subject, asset=args.asset,
                               view_target=args.view, limit=args.limit)
        _print([_dump(j) for j in jobs])

    elif args.command == 'history':
        _print([_dump(r) for r in admin.job_history(args.job_id)])

    elif args.command == 'retry':
        outcome = admin.force_retry(args.job_id, dry_run=args.dry_run, operator=args.operator)
        _print({
            'job_id': outcome.job_id,
            'status': outcome.status.value,
            'dry_run': outcome.dry_run,
            'current_version': outcome.current_version,
            'preview': _dump(outcome.preview),
            'apply_result': _dump(outcome.apply_result),
            'error': outcome.error,
        })

    elif args.command == 'ignore':
        _print(_dump(admin.mark_ignored(args.job_id, args.note, args.operator)))

    elif args.command == 'replay':
        _print(_dump(admin.replay_deadletter(args.job_id, args.operator)))

    elif args.command == 'cache':
        if args.fallback:
            position = admin.read_with_fallback(args.subject, args.asset, args.view)
        else:
            position = admin.read_cache(args.subject, args.asset, args.view)
        _print(_dump(position))

    elif args.command == 'sync':
        _print(_dump(admin.sync_from_ledger(args.subject, args.asset, args.operator, args.view)))

    elif args.command == 'health':
        _print(admin.health())

    elif args.command == 'backfill':
        listener = SignalListener(config, service.queue, service.redis_manager, w3=service.web3)
        count = asyncio.run(listener.backfill(args.from_block, args.to_block))
        _print({'signals': count, 'last_block': listener.last_block})

    return 0


def main(argv: Optional[List[str]] = None) -> int:
    """Command line entry point"""
    args = build_parser().parse_args(argv)

    try:
        config = init_config(args.config)
    except CacheSyncError as e:
        print(f"error: {e}", file=sys.stderr)
        return 2

    init_logging(
        log_dir=Path(config.monitoring.log_dir),
        log_level=config.monitoring.log_level,
        enable_cloudwatch=config.monitoring.cloudwatch_enabled,
        cloudwatch_region=config.monitoring.cloudwatch_region,
        cloudwatch_log_group=config.monitoring.cloudwatch_log_group,
    )
    structlog.contextvars.bind_contextvars(worker_id=config.worker_id, network=config.network_name)

    logger = get_logger("main")

    try:
        if args.command == 'run':
            logger.info(
                "cachesync_starting",
                extra={"network": config.network_name, "chain_id": config.chain_id}
            )
            asyncio.run(run_service(config))
            return 0
        return run_command(args, config)

    except CacheSyncError as e:
        logger.error(f"{args.command} failed: {e}")
        print(f"error: {e}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        logger.info("Keyboard interrupt received")
        return 130


if __name__ == "__main__":
    sys.exit(main())
