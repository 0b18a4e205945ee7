import asyncio
import contextlib
import dataclasses
import enum
import logging

import pydantic

from .config import settings
from .convergence import Intent
from .models import v1 as api
from .utils import backoff_delays, ekresource_for_model, is_gone, is_transient


logger = logging.getLogger(__name__)


class EventKind(enum.Enum):
    """
    The kind of change that was observed for a Kong cluster.
    """
    ADDED = "Added"
    MODIFIED = "Modified"
    DELETED = "Deleted"

    @property
    def intent(self):
        """
        The convergence intent that the change calls for.
        """
        return Intent.TEARDOWN if self is EventKind.DELETED else Intent.ENSURE


#: Maps the types of watch notifications onto event kinds
#: Notifications of any other type, e.g. BOOKMARK, are not forwarded
WATCH_EVENT_KINDS = {
    "ADDED": EventKind.ADDED,
    "MODIFIED": EventKind.MODIFIED,
    "DELETED": EventKind.DELETED,
}


@dataclasses.dataclass(frozen = True)
class ChangeEvent:
    """
    A change to a Kong cluster, as observed by the dispatcher.
    """
    kind: EventKind
    resource: api.KongCluster


class WatchExpired(Exception):
    """
    Raised when the API server ends a watch with an error, e.g. 410 Gone.
    """


class InvalidResourceError(Exception):
    """
    Raised when an object in the Kong cluster collection does not validate.
    """
    def __init__(self, key, validation_error):
        self.key = key
        self.validation_error = validation_error
        super().__init__(f"invalid kong cluster {key[0]}/{key[1]}: {validation_error}")


def object_key(obj):
    """
    Returns the (namespace, name) key for a raw object.
    """
    metadata = obj["metadata"]
    return metadata.get("namespace"), metadata["name"]


class EventDispatcher:
    """
    Converts the watch of Kong clusters in all namespaces into a stream of change events.

    The dispatcher keeps the last known state of each Kong cluster so that when the
    watch has to be re-established, changes that happened while it was down, including
    deletions, are still delivered.
    """
    def __init__(self, client):
        self.client = client
        self._known = {}
        self._task = None
        self._stopper = None

    def watch(self, stop):
        """
        Starts watching in a background task and returns (events, errors) queues.

        The watch runs until the stop event is set, at which point a None is put on
        the events queue to mark the end of the stream.
        """
        if self._task is not None:
            raise RuntimeError("dispatcher is already watching")
        events = asyncio.Queue()
        errors = asyncio.Queue()
        self._task = asyncio.create_task(self._run(events, errors))
        self._stopper = asyncio.create_task(self._stop_on(stop, events))
        return events, errors

    async def _stop_on(self, stop, events):
        await stop.wait()
        self._task.cancel()
        # Using wait means the cancellation does not propagate here
        await asyncio.wait({self._task})
        # The watch task may be cancelled before it ever runs, so mark the end here
        events.put_nowait(None)

    async def join(self):
        """
        Waits for the watch to terminate once the stop event is set.
        """
        if self._stopper is not None:
            await asyncio.wait({self._stopper})

    async def _run(self, events, errors):
        delays = None
        while True:
            try:
                ekclusters = await ekresource_for_model(self.client, api.KongCluster)
                initial, stream = await ekclusters.watch_list(all_namespaces = True)
                # The list succeeded, so start the backoff again next time
                delays = None
                self._resync(initial, events, errors)
                await self._consume(stream, events, errors)
                logger.info("watch of kong clusters ended - resynchronising")
            except WatchExpired as exc:
                logger.info("watch of kong clusters expired - resynchronising: %s", exc)
            except Exception as exc:
                if is_gone(exc):
                    logger.info("watch of kong clusters expired - resynchronising: %s", exc)
                    continue
                if is_transient(exc):
                    logger.warning("watch of kong clusters interrupted: %s", exc)
                else:
                    logger.error("watch of kong clusters failed: %s", exc)
                    errors.put_nowait(exc)
                if delays is None:
                    delays = backoff_delays(
                        settings.watch_retry.base_delay,
                        settings.watch_retry.max_delay
                    )
                await asyncio.sleep(next(delays))

    def _resync(self, initial, events, errors):
        """
        Emits events that bring consumers up to date with the listed state.
        """
        listed = set()
        for obj in initial:
            key = object_key(obj)
            listed.add(key)
            kind = EventKind.MODIFIED if key in self._known else EventKind.ADDED
            self._dispatch(kind, obj, events, errors)
        for key in set(self._known) - listed:
            cluster = self._known.pop(key)
            logger.info("kong cluster %s/%s deleted while not watching", *key)
            events.put_nowait(ChangeEvent(EventKind.DELETED, cluster))

    async def _watch_events(self, stream):
        """
        Yields the events from the watch stream, raising WatchExpired if the API server
        ends the watch because the resource version is too old.
        """
        try:
            async for event in stream:
                yield event
        except KeyError as exc:
            # easykube reads the resource version from every event, which the Status
            # object sent with an ERROR event does not have
            raise WatchExpired(f"watch event has no {exc}") from exc
        except Exception as exc:
            if is_gone(exc):
                raise WatchExpired(str(exc)) from exc
            raise

    async def _consume(self, stream, events, errors):
        async with stream as watch_stream:
            watch_events = self._watch_events(watch_stream)
            async with contextlib.aclosing(watch_events):
                async for event in watch_events:
                    event_type, obj = event["type"], event.get("object")
                    if event_type == "ERROR":
                        raise WatchExpired((obj or {}).get("message", "unknown error"))
                    kind = WATCH_EVENT_KINDS.get(event_type)
                    if kind is None or not obj:
                        continue
                    self._dispatch(kind, obj, events, errors)

    def _dispatch(self, kind, obj, events, errors):
        key = object_key(obj)
        try:
            cluster = api.KongCluster.model_validate(obj)
        except pydantic.ValidationError as exc:
            error = InvalidResourceError(key, exc)
            logger.error(str(error))
            errors.put_nowait(error)
            # A deletion must still be delivered, so fall back to the last valid state
            if kind is EventKind.DELETED and key in self._known:
                events.put_nowait(ChangeEvent(kind, self._known.pop(key)))
            return
        if kind is EventKind.DELETED:
            self._known.pop(key, None)
        else:
            self._known[key] = cluster
        logger.debug("kong cluster %s/%s %s", key[0], key[1], kind.value.lower())
        events.put_nowait(ChangeEvent(kind, cluster))
