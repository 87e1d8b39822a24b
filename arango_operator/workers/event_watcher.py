"""
Kubernetes event watcher for ArangoDeployments.

Watches the ArangoDeployment resources of a namespace and wakes the
reconciliation worker when a deployment is added, its spec changes (new
metadata.generation) or its deletion is requested. Status-only updates, such
as the operator's own status writes, do not trigger a pass.
"""
import asyncio
from typing import Dict, Optional, Tuple

from kubernetes_asyncio import watch
from kubernetes_asyncio.client import ApiException

from arango_operator.config.logging import get_logger

logger = get_logger(__name__)

# Pause before re-opening a watch that ended with an error.
WATCH_RETRY_DELAY = 5


class EventWatcher:
    """Watches ArangoDeployment events and triggers reconciliation passes."""

    def __init__(
        self,
        platform,
        worker,
        namespace: str,
        timeout_seconds: int = 300,
        retry_delay: float = WATCH_RETRY_DELAY,
    ):
        """
        Initialize event watcher.

        Args:
            platform: KubernetesPlatform used to open the watch
            worker: ReconciliationWorker receiving triggers
            namespace: Watched namespace
            timeout_seconds: Server-side watch timeout before the watch is re-opened
            retry_delay: Pause in seconds before re-opening a failed watch
        """
        self.platform = platform
        self.worker = worker
        self.namespace = namespace
        self.timeout_seconds = timeout_seconds
        self.retry_delay = retry_delay
        self.running = False
        self._watch: Optional[watch.Watch] = None
        self._seen: Dict[str, Tuple[Optional[int], bool]] = {}

    def should_trigger(self, event_type: str, obj: dict) -> bool:
        """Decide whether an event warrants a reconciliation pass."""
        metadata = obj.get("metadata", {})
        name = metadata.get("name")
        if not name:
            return False

        if event_type == "DELETED":
            self._seen.pop(name, None)
            return False

        marker = (metadata.get("generation"), metadata.get("deletionTimestamp") is not None)
        if self._seen.get(name) == marker:
            return False
        self._seen[name] = marker
        return True

    async def start(self):
        """Start watching ArangoDeployment events (runs until stopped)."""
        self.running = True
        settings = self.platform.settings
        logger.info("event_watcher_started", namespace=self.namespace)

        while self.running:
            self._watch = watch.Watch()
            try:
                async with self._watch.stream(
                    self.platform.custom_api.list_namespaced_custom_object,
                    group=settings.crd_group,
                    version=settings.crd_version,
                    namespace=self.namespace,
                    plural=settings.crd_plural,
                    timeout_seconds=self.timeout_seconds,
                ) as stream:
                    async for event in stream:
                        event_type = event.get("type")
                        obj = event.get("object") or {}
                        if self.should_trigger(event_type, obj):
                            name = obj["metadata"]["name"]
                            logger.debug("deployment_event", event_type=event_type, deployment=name)
                            self.worker.trigger(name)
            except asyncio.CancelledError:
                logger.info("event_watcher_cancelled")
                break
            except ApiException as e:
                logger.warning("event_watch_failed", status=e.status, error=e.reason)
                await asyncio.sleep(self.retry_delay)
            except Exception as e:
                # Dropped connections and read timeouts end the stream
                logger.error("event_watch_broken", error=str(e), exc_info=True)
                await asyncio.sleep(self.retry_delay)
            finally:
                self._watch = None

        logger.info("event_watcher_stopped")

    async def stop(self):
        """Stop watching events."""
        logger.info("event_watcher_stopping")
        self.running = False
        if self._watch is not None:
            self._watch.stop()
