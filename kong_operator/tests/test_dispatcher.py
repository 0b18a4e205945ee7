import asyncio
import unittest
from unittest import mock

from easykube import ApiError

from kong_operator.config import settings
from kong_operator.convergence import Intent
from kong_operator.dispatcher import (
    EventDispatcher,
    EventKind,
    InvalidResourceError,
)
from kong_operator.models import v1 as api

from .fake import FakeClient, api_error


CLUSTERS_API_VERSION = f"{settings.api_group}/{api.KongCluster._meta.version}"
CLUSTERS = api.KongCluster._meta.plural_name


def cluster_obj(name, replicas = 3, namespace = "default"):
    return dict(
        apiVersion = CLUSTERS_API_VERSION,
        kind = "KongCluster",
        metadata = dict(name = name, namespace = namespace),
        spec = dict(replicas = replicas, baseImage = "kong:2.0"),
    )


class TestEventKind(unittest.TestCase):
    def test_intent(self):
        self.assertIs(EventKind.ADDED.intent, Intent.ENSURE)
        self.assertIs(EventKind.MODIFIED.intent, Intent.ENSURE)
        self.assertIs(EventKind.DELETED.intent, Intent.TEARDOWN)


class TestEventDispatcher(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        for attribute, value in [("base_delay", 0.01), ("max_delay", 0.01)]:
            patcher = mock.patch.object(settings.watch_retry, attribute, value)
            patcher.start()
            self.addCleanup(patcher.stop)
        self.client = FakeClient()
        self.dispatcher = EventDispatcher(self.client)
        self.stop = asyncio.Event()

    async def asyncTearDown(self):
        self.stop.set()
        await self.dispatcher.join()

    def start(self):
        self.events, self.errors = self.dispatcher.watch(self.stop)

    async def next_event(self):
        return await asyncio.wait_for(self.events.get(), 1)

    async def wait_for_watches(self, count = 1):
        """
        Waits until the given number of watches have been opened.
        """
        async def watches_opened():
            while self.client.count("watch") < count or not self.client.streams:
                await asyncio.sleep(0.001)
        await asyncio.wait_for(watches_opened(), 1)

    async def test_existing_clusters_are_added(self):
        self.client.put(CLUSTERS_API_VERSION, CLUSTERS, cluster_obj("c1"))
        self.start()

        event = await self.next_event()

        self.assertIs(event.kind, EventKind.ADDED)
        self.assertIsInstance(event.resource, api.KongCluster)
        self.assertEqual(event.resource.metadata.name, "c1")
        self.assertEqual(event.resource.spec.replicas, 3)

    async def test_notifications_are_classified(self):
        self.start()
        await self.wait_for_watches()

        self.client.emit("ADDED", cluster_obj("c1"))
        self.client.emit("BOOKMARK", {"metadata": {"resourceVersion": "10"}})
        self.client.emit("MODIFIED", cluster_obj("c1", replicas = 5))
        self.client.emit("DELETED", cluster_obj("c1", replicas = 5))

        events = [await self.next_event() for _ in range(3)]
        self.assertEqual(
            [event.kind for event in events],
            [EventKind.ADDED, EventKind.MODIFIED, EventKind.DELETED]
        )
        self.assertEqual(events[1].resource.spec.replicas, 5)
        self.assertTrue(self.errors.empty())

    async def test_resync_after_watch_ends(self):
        self.client.put(CLUSTERS_API_VERSION, CLUSTERS, cluster_obj("c1"))
        self.client.put(CLUSTERS_API_VERSION, CLUSTERS, cluster_obj("c2"))
        self.start()
        _ = [await self.next_event() for _ in range(2)]
        await self.wait_for_watches()

        # c2 goes away and c3 appears while the watch is being re-established
        del self.client.store[(CLUSTERS_API_VERSION, CLUSTERS)][("default", "c2")]
        self.client.put(CLUSTERS_API_VERSION, CLUSTERS, cluster_obj("c3"))
        self.client.end_watches()

        events = [await self.next_event() for _ in range(3)]
        self.assertEqual(
            [(event.kind, event.resource.metadata.name) for event in events],
            [
                (EventKind.MODIFIED, "c1"),
                (EventKind.ADDED, "c3"),
                (EventKind.DELETED, "c2"),
            ]
        )
        self.assertEqual(self.client.count("watch"), 2)

    async def test_error_notification_triggers_resync(self):
        self.start()
        await self.wait_for_watches()

        self.client.emit("ERROR", {
            "apiVersion": "v1",
            "kind": "Status",
            "metadata": {},
            "status": "Failure",
            "message": "too old resource version: 1 (10)",
            "reason": "Expired",
            "code": 410,
        })
        await self.wait_for_watches(2)
        self.client.emit("ADDED", cluster_obj("c1"))

        event = await self.next_event()
        self.assertIs(event.kind, EventKind.ADDED)
        self.assertTrue(self.errors.empty())

    async def test_gone_during_watch_triggers_resync(self):
        self.start()
        await self.wait_for_watches()

        self.client.break_watches(api_error(410, "too old resource version"))
        await self.wait_for_watches(2)
        self.client.emit("ADDED", cluster_obj("c1"))

        event = await self.next_event()
        self.assertIs(event.kind, EventKind.ADDED)
        self.assertTrue(self.errors.empty())

    async def test_gone_when_starting_watch_is_not_reported(self):
        self.client.put(CLUSTERS_API_VERSION, CLUSTERS, cluster_obj("c1"))
        self.client.fail("watch", CLUSTERS, status_code = 410)
        self.start()

        event = await self.next_event()

        self.assertEqual(event.resource.metadata.name, "c1")
        self.assertEqual(self.client.count("watch"), 2)
        self.assertTrue(self.errors.empty())

    async def test_reconnects_silently_after_transient_error(self):
        self.client.put(CLUSTERS_API_VERSION, CLUSTERS, cluster_obj("c1"))
        self.client.fail("watch", CLUSTERS, status_code = 503, times = 2)
        self.start()

        event = await self.next_event()

        self.assertEqual(event.resource.metadata.name, "c1")
        self.assertEqual(self.client.count("watch"), 3)
        self.assertTrue(self.errors.empty())

    async def test_non_transient_errors_are_reported(self):
        self.client.put(CLUSTERS_API_VERSION, CLUSTERS, cluster_obj("c1"))
        self.client.fail("watch", CLUSTERS, status_code = 403)
        self.start()

        event = await self.next_event()
        error = self.errors.get_nowait()

        self.assertEqual(event.resource.metadata.name, "c1")
        self.assertIsInstance(error, ApiError)
        self.assertEqual(error.status_code, 403)

    async def test_invalid_clusters_are_reported(self):
        self.start()
        await self.wait_for_watches()

        invalid = cluster_obj("bad")
        del invalid["spec"]["replicas"]
        self.client.emit("ADDED", invalid)
        self.client.emit("ADDED", cluster_obj("good"))

        event = await self.next_event()
        error = self.errors.get_nowait()

        self.assertEqual(event.resource.metadata.name, "good")
        self.assertIsInstance(error, InvalidResourceError)
        self.assertEqual(error.key, ("default", "bad"))

    async def test_invalid_deletion_uses_last_known_state(self):
        self.client.put(CLUSTERS_API_VERSION, CLUSTERS, cluster_obj("c1"))
        self.start()
        _ = await self.next_event()
        await self.wait_for_watches()

        invalid = cluster_obj("c1")
        invalid["spec"]["replicas"] = -1
        self.client.emit("DELETED", invalid)

        event = await self.next_event()
        self.assertIs(event.kind, EventKind.DELETED)
        self.assertEqual(event.resource.spec.replicas, 3)

    async def test_stop_closes_watch(self):
        self.start()
        await self.wait_for_watches()
        stream = self.client.streams[0]

        self.stop.set()
        await asyncio.wait_for(self.dispatcher.join(), 1)

        self.assertTrue(stream.closed)
        self.assertEqual(self.client.streams, [])
        self.assertIsNone(await self.next_event())

    async def test_watch_cannot_be_started_twice(self):
        self.start()
        with self.assertRaises(RuntimeError):
            self.dispatcher.watch(self.stop)
