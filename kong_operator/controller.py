import asyncio
import collections
import logging

import pydantic

from .config import settings
from .convergence import Converger, Intent
from .dispatcher import EventDispatcher
from .models import v1 as api
from .utils import ekresource_for_model, is_not_found


logger = logging.getLogger(__name__)


class Controller:
    """
    Drives convergence of Kong clusters from watch events and from a periodic
    full reconciliation.

    A failure to converge one Kong cluster is logged and never prevents the
    convergence of others.
    """
    def __init__(self, client, converger = None, dispatcher = None):
        self.client = client
        self.converger = converger or Converger(client)
        self.dispatcher = dispatcher or EventDispatcher(client)
        # At most one convergence pass per Kong cluster at a time
        self._locks = collections.defaultdict(asyncio.Lock)
        self._stop = asyncio.Event()
        self._tasks = []

    def start(self):
        """
        Starts watching and periodically reconciling Kong clusters in background tasks.
        """
        events, errors = self.dispatcher.watch(self._stop)
        self._tasks = [
            asyncio.create_task(self.process_events(events)),
            asyncio.create_task(self.log_errors(errors)),
            asyncio.create_task(self.reconcile_periodically()),
        ]

    async def stop(self):
        """
        Stops the background tasks, allowing any in-flight convergence to finish.
        """
        self._stop.set()
        await self.dispatcher.join()
        processor, error_logger, reconciler = self._tasks
        # Both exit by themselves once any in-flight convergence is complete
        await asyncio.wait({processor, reconciler})
        error_logger.cancel()
        await asyncio.wait({error_logger})

    @property
    def running(self):
        """
        Indicates if the controller is running.
        """
        return bool(self._tasks) and not any(task.done() for task in self._tasks)

    async def process_events(self, events):
        """
        Converges the Kong cluster from each event until the end of the stream.

        Each event is handled in its own task, so that a slow pass for one Kong cluster
        does not hold up the others. Passes for the same Kong cluster still run one at a
        time, in the order the events arrived.
        """
        passes = set()
        try:
            while True:
                event = await events.get()
                if event is None:
                    break
                task = asyncio.create_task(
                    self.converge(event.resource, event.kind.intent)
                )
                passes.add(task)
                task.add_done_callback(passes.discard)
        finally:
            if passes:
                await asyncio.wait(passes)

    async def log_errors(self, errors):
        """
        Logs the out-of-band errors reported by the dispatcher.
        """
        while True:
            error = await errors.get()
            logger.error("error from kong cluster watch: %s", error)

    async def converge(self, cluster, intent, refresh = False):
        """
        Runs a convergence pass for the given Kong cluster, returning true on success.

        If refresh is given, the Kong cluster is fetched again once the pass holds the
        lock and the pass is skipped if it no longer exists. This stops a pass working
        from a stale list from recreating objects for a Kong cluster that was torn down
        while it waited.

        Exceptions are logged rather than raised, so that one bad Kong cluster cannot
        halt the convergence of the others.
        """
        key = (cluster.metadata.namespace, cluster.metadata.name)
        # Locks are never discarded, as another pass may be waiting on one
        async with self._locks[key]:
            try:
                if refresh:
                    cluster = await self._fetch(*key)
                    if cluster is None:
                        logger.info("kong cluster %s/%s no longer exists - skipping", *key)
                        return True
                failures = await self.converger.converge(cluster, intent)
            except Exception:
                logger.exception(
                    "%s of kong cluster %s/%s failed",
                    intent.value.lower(),
                    *key
                )
                return False
        return not failures

    async def _fetch(self, namespace, name):
        """
        Returns the current state of the Kong cluster, or None if it does not exist.
        """
        ekclusters = await ekresource_for_model(self.client, api.KongCluster)
        try:
            obj = await ekclusters.fetch(name, namespace = namespace)
        except Exception as exc:
            if is_not_found(exc):
                return None
            raise
        return api.KongCluster.model_validate(obj)

    async def list_clusters(self):
        """
        Returns all the Kong clusters in all namespaces.

        Listing is retried at a fixed interval until it succeeds or the controller stops,
        in which case None is returned.
        """
        while not self._stop.is_set():
            try:
                ekclusters = await ekresource_for_model(self.client, api.KongCluster)
                objs = [obj async for obj in ekclusters.list(all_namespaces = True)]
            except Exception as exc:
                logger.error(
                    "could not list kong clusters - retrying in %.1fs: %s",
                    settings.list_retry_delay,
                    exc
                )
                await self._sleep(settings.list_retry_delay)
            else:
                return [cluster for cluster in map(self._validate, objs) if cluster]
        return None

    def _validate(self, obj):
        try:
            return api.KongCluster.model_validate(obj)
        except pydantic.ValidationError as exc:
            logger.error(
                "skipping invalid kong cluster %s/%s: %s",
                obj["metadata"].get("namespace"),
                obj["metadata"]["name"],
                exc
            )
            return None

    async def reconcile_all(self):
        """
        Ensures every Kong cluster.
        """
        clusters = await self.list_clusters()
        if clusters is None:
            return
        for cluster in clusters:
            if self._stop.is_set():
                break
            await self.converge(cluster, Intent.ENSURE, refresh = True)

    async def reconcile_periodically(self):
        """
        Reconciles all Kong clusters at the configured interval, correcting any drift.
        """
        while not self._stop.is_set():
            await self._sleep(settings.timer_interval)
            if self._stop.is_set():
                break
            logger.info("running periodic reconciliation of kong clusters")
            await self.reconcile_all()

    async def _sleep(self, delay):
        """
        Sleeps for the given delay, waking early if the controller is stopped.
        """
        try:
            await asyncio.wait_for(self._stop.wait(), delay)
        except asyncio.TimeoutError:
            pass
