"""
Tests for the offline sync queue: durable mirror, replay semantics and
connectivity-driven triggers. Replays go to a recording fake or to an
httpx.MockTransport; nothing touches the network.
"""
import json

import httpx
import pytest

from offline_sync import (
    ConnectivityState,
    HealthCheckMonitor,
    HttpReplayer,
    JsonFileQueueStorage,
    ManualConnectivity,
    OfflineSyncQueue,
    SyncItem,
)


class FakeReplayer:
    """Fails for any payload listed in ``failing``; records every attempt."""

    def __init__(self, failing=()):
        self.failing = set(failing)
        self.sent = []

    async def __call__(self, item: SyncItem) -> None:
        self.sent.append(item.payload["n"])
        if item.payload["n"] in self.failing:
            raise RuntimeError(f"server rejected {item.payload['n']}")


@pytest.fixture
def storage(tmp_path):
    return JsonFileQueueStorage(tmp_path / "queue.json")


def on_disk(storage):
    return json.loads(storage.path.read_text())


# ─── enqueue ─────────────────────────────────────────────────────────────────

def test_enqueue_mirrors_to_disk(storage):
    queue = OfflineSyncQueue(storage, FakeReplayer())
    item_id = queue.enqueue("/api/weights", "post", {"weight": 81.2})

    saved = on_disk(storage)
    assert [i["id"] for i in saved] == [item_id]
    assert saved[0]["method"] == "POST"
    assert saved[0]["payload"] == {"weight": 81.2}
    assert saved[0]["timestamp"] > 0


def test_enqueue_preserves_insertion_order_and_unique_ids(storage):
    queue = OfflineSyncQueue(storage, FakeReplayer())
    ids = [queue.enqueue("/api/macros", "POST", {"n": n}) for n in range(5)]
    assert len(set(ids)) == 5
    assert [i.id for i in queue.pending()] == ids
    assert [i["payload"]["n"] for i in on_disk(storage)] == list(range(5))


@pytest.mark.parametrize("payload", [None, "raw text", 42, [1, 2], {"nested": {"set": {1, 2}}}, object()])
def test_enqueue_never_raises_on_payload_shape(storage, payload):
    queue = OfflineSyncQueue(storage, FakeReplayer())
    item_id = queue.enqueue("/api/workouts", "POST", payload)
    assert [i["id"] for i in on_disk(storage)] == [item_id]


def test_enqueue_survives_unwritable_storage(tmp_path):
    blocker = tmp_path / "not_a_dir"
    blocker.write_text("")
    queue = OfflineSyncQueue(JsonFileQueueStorage(blocker / "queue.json"), FakeReplayer())
    item_id = queue.enqueue("/api/weights", "POST", {"weight": 80})
    assert [i.id for i in queue.pending()] == [item_id]


def test_queue_reloads_after_restart(storage):
    first = OfflineSyncQueue(storage, FakeReplayer())
    ids = [first.enqueue("/api/weights", "POST", {"n": n}) for n in range(3)]

    second = OfflineSyncQueue(storage, FakeReplayer())
    assert [i.id for i in second.pending()] == ids


@pytest.mark.parametrize("content", ["{not json", "5", "null", '{"id": "x"}', "[5]"])
def test_corrupt_mirror_starts_empty(storage, content):
    storage.path.write_text(content)
    assert OfflineSyncQueue(storage, FakeReplayer()).pending() == []


# ─── replay ──────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_replay_partial_failure_keeps_only_failed_item(storage):
    replayer = FakeReplayer(failing={2})
    queue = OfflineSyncQueue(storage, replayer)
    for n in (1, 2, 3):
        queue.enqueue("/api/workouts", "POST", {"n": n})

    sent = await queue.replay()

    assert sent == 2
    assert replayer.sent == [1, 2, 3]
    assert [i.payload["n"] for i in queue.pending()] == [2]
    # The mirror reflects the post-replay queue, not the pre-replay snapshot.
    assert [i["payload"]["n"] for i in on_disk(storage)] == [2]

    await queue.replay()
    assert replayer.sent == [1, 2, 3, 2]


@pytest.mark.asyncio
async def test_failed_item_is_retried_without_limit_by_default(storage):
    replayer = FakeReplayer(failing={1})
    queue = OfflineSyncQueue(storage, replayer)
    queue.enqueue("/api/workouts", "POST", {"n": 1})

    for _ in range(10):
        await queue.replay()

    assert len(queue) == 1
    assert queue.pending()[0].attempts == 10
    assert on_disk(storage)[0]["attempts"] == 10


@pytest.mark.asyncio
async def test_max_attempts_drops_item(storage):
    replayer = FakeReplayer(failing={1})
    queue = OfflineSyncQueue(storage, replayer, max_attempts=3)
    queue.enqueue("/api/workouts", "POST", {"n": 1})
    queue.enqueue("/api/workouts", "POST", {"n": 2})

    await queue.replay()
    await queue.replay()
    assert [i.payload["n"] for i in queue.pending()] == [1]
    await queue.replay()

    assert len(queue) == 0
    assert on_disk(storage) == []
    assert replayer.sent == [1, 2, 1, 1]


@pytest.mark.asyncio
async def test_item_enqueued_during_replay_is_kept(storage):
    queue = None

    class EnqueueingReplayer(FakeReplayer):
        async def __call__(self, item):
            await super().__call__(item)
            if item.payload["n"] == 1:
                queue.enqueue("/api/weights", "POST", {"n": 99})

    queue = OfflineSyncQueue(storage, EnqueueingReplayer())
    queue.enqueue("/api/weights", "POST", {"n": 1})

    await queue.replay()

    assert [i.payload["n"] for i in queue.pending()] == [99]
    assert [i["payload"]["n"] for i in on_disk(storage)] == [99]


# ─── connectivity ────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_initial_state_taken_from_source(storage):
    queue = OfflineSyncQueue(storage, FakeReplayer())
    await queue.observe_connectivity(ManualConnectivity(online=False))
    assert queue.state is ConnectivityState.OFFLINE

    other = OfflineSyncQueue(storage, FakeReplayer())
    await other.observe_connectivity(ManualConnectivity(online=True))
    assert other.state is ConnectivityState.ONLINE


@pytest.mark.asyncio
async def test_going_online_triggers_replay(storage):
    replayer = FakeReplayer()
    net = ManualConnectivity(online=False)
    queue = OfflineSyncQueue(storage, replayer)
    await queue.observe_connectivity(net)

    queue.enqueue("/api/weights", "POST", {"n": 1})
    queue.enqueue("/api/weights", "POST", {"n": 2})
    assert replayer.sent == []

    await net.set_online(True)

    assert queue.state is ConnectivityState.ONLINE
    assert replayer.sent == [1, 2]
    assert len(queue) == 0


@pytest.mark.asyncio
async def test_going_offline_does_not_replay(storage):
    replayer = FakeReplayer()
    net = ManualConnectivity(online=True)
    queue = OfflineSyncQueue(storage, replayer)
    await queue.observe_connectivity(net)
    queue.enqueue("/api/weights", "POST", {"n": 1})

    await net.set_online(False)

    assert queue.state is ConnectivityState.OFFLINE
    assert replayer.sent == []


@pytest.mark.asyncio
async def test_starting_online_with_persisted_items_replays(storage):
    OfflineSyncQueue(storage, FakeReplayer()).enqueue("/api/weights", "POST", {"n": 7})

    replayer = FakeReplayer()
    queue = OfflineSyncQueue(storage, replayer)
    await queue.observe_connectivity(ManualConnectivity(online=True))

    assert replayer.sent == [7]
    assert on_disk(storage) == []


@pytest.mark.asyncio
async def test_reconnect_retries_failed_item(storage):
    replayer = FakeReplayer(failing={1})
    net = ManualConnectivity(online=False)
    queue = OfflineSyncQueue(storage, replayer)
    await queue.observe_connectivity(net)
    queue.enqueue("/api/weights", "POST", {"n": 1})

    await net.set_online(True)
    await net.set_online(False)
    replayer.failing.clear()
    await net.set_online(True)

    assert replayer.sent == [1, 1]
    assert len(queue) == 0


# ─── HTTP replayer & health monitor ──────────────────────────────────────────

@pytest.mark.asyncio
async def test_http_replayer_sends_stored_request(storage):
    received = []

    def handler(request: httpx.Request) -> httpx.Response:
        received.append((request.method, request.url.path, json.loads(request.content)))
        return httpx.Response(200, json={"id": 1})

    queue = OfflineSyncQueue(storage, HttpReplayer("http://api.test", transport=httpx.MockTransport(handler)))
    queue.enqueue("/api/weights", "POST", {"weight": 80.4})

    assert await queue.replay() == 1
    assert received == [("POST", "/api/weights", {"weight": 80.4})]


@pytest.mark.asyncio
async def test_http_replayer_error_status_keeps_item(storage):
    transport = httpx.MockTransport(lambda request: httpx.Response(400, json={"error": "Invalid weight data"}))
    queue = OfflineSyncQueue(storage, HttpReplayer("http://api.test", transport=transport))
    queue.enqueue("/api/weights", "POST", {"weight": -1})

    assert await queue.replay() == 0
    assert len(queue) == 1


@pytest.mark.asyncio
async def test_health_monitor_transitions_drive_queue(storage):
    up = {"value": False}

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/health":
            if not up["value"]:
                raise httpx.ConnectError("refused", request=request)
            return httpx.Response(200, json={"ok": True})
        return httpx.Response(200, json={"id": 1})

    transport = httpx.MockTransport(handler)
    monitor = HealthCheckMonitor("http://api.test", transport=transport)
    queue = OfflineSyncQueue(storage, HttpReplayer("http://api.test", transport=transport))

    assert await monitor.poll_once() is False
    await queue.observe_connectivity(monitor)
    queue.enqueue("/api/macros", "POST", {"calories": 2000, "protein": 150, "carbs": 200, "fats": 60})

    up["value"] = True
    assert await monitor.poll_once() is True

    assert queue.state is ConnectivityState.ONLINE
    assert len(queue) == 0
