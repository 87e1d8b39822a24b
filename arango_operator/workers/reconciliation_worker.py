"""
Reconciliation worker.

Schedules reconciliation passes for every ArangoDeployment in the watched
namespace. Scheduling is level-triggered: a periodic re-sync enqueues every
deployment, and the event watcher enqueues a deployment whenever its spec
changes. Passes for different deployments run concurrently; a deployment never
has two passes at the same time. A trigger arriving during a pass schedules one
more pass after it.
"""
import asyncio
import signal
import sys
from typing import Dict, Optional, Set

from arango_operator.config.logging import configure_logging, deployment_context, get_logger
from arango_operator.config.settings import settings
from arango_operator.services.reconciler import DeploymentReconciler

logger = get_logger(__name__)


class ReconciliationWorker:
    """
    Drives reconciliation passes for all deployments of a namespace.

    Features:
    - Periodic re-sync (configurable interval)
    - Event-driven wake-up through ``trigger``
    - At most one in-flight pass per deployment, with requeue on overlap
    - Graceful shutdown
    """

    def __init__(
        self,
        reconciler: DeploymentReconciler,
        namespace: str,
        reconcile_interval: int = 30,
    ):
        """
        Initialize reconciliation worker.

        Args:
            reconciler: Runs a single pass for one deployment
            namespace: Namespace whose deployments are reconciled
            reconcile_interval: Seconds between periodic re-syncs
        """
        self.reconciler = reconciler
        self.namespace = namespace
        self.reconcile_interval = reconcile_interval
        self.running = False
        self._sleep_task: Optional[asyncio.Task] = None
        self._passes: Dict[str, asyncio.Task] = {}
        self._requeued: Set[str] = set()

    async def start(self):
        """Start reconciliation worker (runs until stopped)."""
        self.running = True

        logger.info(
            "reconciliation_worker_started",
            namespace=self.namespace,
            interval_seconds=self.reconcile_interval,
        )

        while self.running:
            try:
                await self.reconcile_all_deployments()

                logger.debug(
                    "reconciliation_cycle_completed",
                    next_run_in_seconds=self.reconcile_interval,
                )
                try:
                    self._sleep_task = asyncio.create_task(asyncio.sleep(self.reconcile_interval))
                    await self._sleep_task
                except asyncio.CancelledError:
                    logger.info("reconciliation_sleep_cancelled")
                    break
                finally:
                    self._sleep_task = None

            except asyncio.CancelledError:
                logger.info("reconciliation_worker_cancelled")
                break
            except Exception as e:
                logger.error(
                    "reconciliation_cycle_error",
                    error=str(e),
                    exc_info=True,
                )
                if not self.running:
                    break
                try:
                    self._sleep_task = asyncio.create_task(asyncio.sleep(self.reconcile_interval))
                    await self._sleep_task
                except asyncio.CancelledError:
                    logger.info("reconciliation_error_sleep_cancelled")
                    break
                finally:
                    self._sleep_task = None

        logger.info("reconciliation_worker_stopped")

    async def stop(self):
        """Stop reconciliation worker gracefully; in-flight passes are cancelled."""
        logger.info("stopping_reconciliation_worker")
        self.running = False

        if self._sleep_task and not self._sleep_task.done():
            self._sleep_task.cancel()

        passes = list(self._passes.values())
        for task in passes:
            task.cancel()
        await asyncio.gather(*passes, return_exceptions=True)

    async def reconcile_all_deployments(self):
        """Schedule a pass for every deployment and wait for the passes to finish."""
        deployments = await self.reconciler.platform.list_deployments(self.namespace)
        if not deployments:
            logger.debug("no_deployments_found", namespace=self.namespace)
            return

        logger.debug(
            "reconciliation_started",
            namespace=self.namespace,
            deployment_count=len(deployments),
        )

        tasks = [self.trigger(deployment.name) for deployment in deployments]
        await asyncio.gather(*tasks, return_exceptions=True)

    def trigger(self, name: str) -> asyncio.Task:
        """
        Request a pass for one deployment.

        Returns the task of the pass that will observe this request.
        """
        task = self._passes.get(name)
        if task is not None and not task.done():
            self._requeued.add(name)
            return task

        task = asyncio.create_task(self._run_passes(name), name=f"reconcile-{name}")
        self._passes[name] = task
        return task

    async def _run_passes(self, name: str):
        try:
            while True:
                self._requeued.discard(name)
                await self._reconcile_deployment(name)
                if name not in self._requeued or not self.running:
                    break
        finally:
            self._passes.pop(name, None)

    async def _reconcile_deployment(self, name: str):
        try:
            with deployment_context(name, self.namespace):
                status = await self.reconciler.reconcile(name, self.namespace)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            # Deferred to the next trigger or re-sync
            logger.error(
                "reconciliation_failed_for_deployment",
                deployment=name,
                namespace=self.namespace,
                error_type=type(e).__name__,
                error=str(e),
                exc_info=True,
            )
            return

        if status is not None:
            logger.debug(
                "deployment_reconciled",
                deployment=name,
                namespace=self.namespace,
                phase=status.phase.value if status.phase else None,
            )


async def main():
    """Run the reconciliation worker and the event watcher without the dashboard."""
    from arango_operator.services.kubernetes import KubernetesPlatform
    from arango_operator.workers.event_watcher import EventWatcher

    configure_logging()
    platform = await KubernetesPlatform.connect(settings)
    worker = ReconciliationWorker(
        DeploymentReconciler(platform, settings=settings),
        namespace=settings.watch_namespace,
        reconcile_interval=settings.reconcile_interval,
    )
    watcher = EventWatcher(platform, worker, namespace=settings.watch_namespace)

    loop = asyncio.get_running_loop()

    def signal_handler(sig):
        logger.info("signal_received", signal=sig)
        asyncio.create_task(watcher.stop())
        asyncio.create_task(worker.stop())

    loop.add_signal_handler(signal.SIGTERM, lambda: signal_handler("SIGTERM"))
    loop.add_signal_handler(signal.SIGINT, lambda: signal_handler("SIGINT"))

    try:
        await asyncio.gather(worker.start(), watcher.start())
    finally:
        await platform.close()


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("reconciliation_worker_interrupted")
        sys.exit(0)
