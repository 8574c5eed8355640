import argparse
import logging
import random
import signal
import threading
from typing import List, Optional

from kubernetes.client.rest import ApiException

from k8s_client import ClusterClient
from reconciler import NodeReconciler
from scheduler import RecheckScheduler
from settings import Settings, load_settings
from workqueue import WorkQueue

TRIGGER_EVENTS = ("ADDED", "MODIFIED")
MAX_WATCH_BACKOFF = 30

logger = logging.getLogger(__name__)


class FencingController:
    """Feeds node names from the cluster to a pool of reconcile workers.

    Nodes are listed, then watched until the watch times out after
    resync_seconds, at which point every node is listed and queued again.
    """

    def __init__(self, cluster: ClusterClient, settings: Settings,
                 reconciler: Optional[NodeReconciler] = None,
                 scheduler: Optional[RecheckScheduler] = None):
        self.cluster = cluster
        self.settings = settings
        self.scheduler = scheduler or RecheckScheduler()
        self.reconciler = reconciler or NodeReconciler(cluster, settings.namespace, scheduler=self.scheduler)
        self.queue = WorkQueue(max_delay=settings.max_retry_delay)
        self._stop = threading.Event()
        self._workers: List[threading.Thread] = []

    def enqueue(self, node_name: str):
        self.queue.add(node_name)

    def handle_event(self, event: dict):
        """Queue the node from a watch event; deletions are left to garbage collection"""
        if event.get("type") not in TRIGGER_EVENTS:
            return
        node = event.get("object")
        metadata = getattr(node, "metadata", None)
        if metadata is None or not metadata.name:
            return
        self.enqueue(metadata.name)

    def process_next(self) -> bool:
        """Reconcile one queued node. Returns False once the queue is shut down."""
        node_name = self.queue.get()
        if node_name is None:
            return False
        try:
            self.reconciler.reconcile(node_name)
        except Exception:
            delay = self.queue.add_rate_limited(node_name)
            logger.exception(f"Reconcile of node {node_name} failed, retrying in {delay:.0f}s")
        else:
            self.queue.forget(node_name)
        finally:
            self.queue.done(node_name)
        return True

    def _worker(self):
        while self.process_next():
            pass

    def start_workers(self):
        for i in range(self.settings.workers):
            worker = threading.Thread(target=self._worker, name=f"fencing-worker-{i}", daemon=True)
            worker.start()
            self._workers.append(worker)

    def resync(self) -> Optional[str]:
        """Queue every node, returning the list's resourceVersion"""
        nodes = self.cluster.list_nodes()
        for node in nodes.items:
            self.enqueue(node.metadata.name)
        logger.debug(f"Resynced {len(nodes.items)} nodes")
        return nodes.metadata.resource_version if nodes.metadata else None

    def watch(self, resource_version: Optional[str]):
        for event in self.cluster.watch_nodes(resource_version=resource_version,
                                              timeout_seconds=self.settings.resync_seconds):
            if self._stop.is_set():
                break
            self.handle_event(event)

    def watch_loop(self):
        """List and watch nodes until stopped. Stops the controller on RBAC errors."""
        backoff = 1
        while not self._stop.is_set():
            try:
                self.watch(self.resync())
                backoff = 1
                continue
            except ApiException as e:
                if e.status in (401, 403):
                    logger.error(f"Access to nodes denied (status={e.status}), "
                                 f"check the controller's RBAC permissions")
                    self._stop.set()
                    return
                if e.status == 410:
                    logger.warning("Watch resource version expired, re-listing")
                    continue
                logger.error(f"Node watch failed: {e}")
            except Exception:
                logger.exception("Unexpected error watching nodes")
            self._stop.wait(backoff * (0.5 + random.random()))
            backoff = min(backoff * 2, MAX_WATCH_BACKOFF)

    def run(self):
        logger.info(f"Node fencing controller started (namespace {self.settings.namespace}, "
                    f"{self.settings.workers} workers)")
        self.start_workers()
        watcher = threading.Thread(target=self.watch_loop, name="node-watch", daemon=True)
        watcher.start()
        try:
            self._stop.wait()
        finally:
            self.shutdown()

    def stop(self):
        self._stop.set()

    def shutdown(self):
        self._stop.set()
        self.queue.shut_down()
        self.scheduler.cancel_all()
        for worker in self._workers:
            worker.join(timeout=10)
        self._workers = []
        logger.info("Node fencing controller stopped")


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Fence unreachable Kubernetes nodes by running remediation jobs")
    parser.add_argument("--namespace", help="Namespace holding fencing PodTemplates and Jobs")
    parser.add_argument("--config", help="YAML settings file")
    parser.add_argument("--workers", type=int, help="Number of concurrent reconcile workers")
    parser.add_argument("--resync-seconds", type=int, help="Seconds between full node resyncs")
    parser.add_argument("--log-level", help="Logging level (DEBUG, INFO, ...)")
    return parser.parse_args(argv)


def main(argv=None):
    args = parse_args(argv)
    settings = load_settings(
        config_file=args.config,
        namespace=args.namespace,
        workers=args.workers,
        resync_seconds=args.resync_seconds,
        log_level=args.log_level,
    )
    logging.basicConfig(level=settings.log_level, format="%(asctime)s %(levelname)s %(name)s %(message)s")

    controller = FencingController(ClusterClient(), settings)

    def handle_signal(signum, frame):
        logger.info(f"Received signal {signum}, shutting down")
        controller.stop()

    signal.signal(signal.SIGTERM, handle_signal)
    signal.signal(signal.SIGINT, handle_signal)
    controller.run()


if __name__ == "__main__":
    main()
