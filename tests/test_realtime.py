import pytest
from starlette.websockets import WebSocketDisconnect

from auth import Principal
from realtime import EVENTS_TOPIC, ChangeFeed
from visibility import list_visible_events

from conftest import add_event, add_profile


@pytest.mark.anyio
async def test_subscriber_reruns_read_path_on_change(db):
    feed = ChangeFeed()
    viewer = Principal(id="s1", role="student")
    seen = []

    async def refresh(change):
        seen.append((change["op"], [e["title"] for e in list_visible_events(db, viewer)]))

    await feed.subscribe(EVENTS_TOPIC, refresh)
    add_event(db, "adm-1", title="Sports day", visibility_scope="schoolwide")
    delivered = await feed.publish(EVENTS_TOPIC, {"op": "insert"})

    assert delivered == 1
    assert seen == [("insert", ["Sports day"])]


@pytest.mark.anyio
async def test_unsubscribed_callbacks_are_not_called():
    feed = ChangeFeed()
    calls = []

    async def cb(change):
        calls.append(change)

    await feed.subscribe(EVENTS_TOPIC, cb)
    await feed.unsubscribe(EVENTS_TOPIC, cb)
    assert await feed.publish(EVENTS_TOPIC, {"op": "delete"}) == 0
    assert calls == []
    assert feed.subscriber_count(EVENTS_TOPIC) == 0


@pytest.mark.anyio
async def test_failing_subscriber_is_dropped_and_others_still_run():
    feed = ChangeFeed()
    calls = []

    async def broken(change):
        raise RuntimeError("socket closed")

    async def healthy(change):
        calls.append(change["op"])

    await feed.subscribe(EVENTS_TOPIC, broken)
    await feed.subscribe(EVENTS_TOPIC, healthy)

    assert await feed.publish(EVENTS_TOPIC, {"op": "update"}) == 1
    assert calls == ["update"]
    assert feed.subscriber_count(EVENTS_TOPIC) == 1


@pytest.mark.anyio
async def test_topics_are_isolated():
    feed = ChangeFeed()
    calls = []

    async def cb(change):
        calls.append(change)

    await feed.subscribe("alerts", cb)
    assert await feed.publish(EVENTS_TOPIC, {"op": "insert"}) == 0
    assert calls == []


def test_event_writes_publish_changes(client, db, feed, headers_for):
    add_profile(db, "tch-1", role="teacher")
    eid = add_event(db, "tch-1")
    published = []

    async def publish(topic, change):
        published.append((topic, change["op"]))
        return 0

    feed.publish = publish
    client.put("/api/events/visibility", json={"eventId": eid, "visibility_scope": "class"}, headers=headers_for("tch-1"))
    client.delete(f"/api/events/{eid}", headers=headers_for("tch-1"))

    assert published == [(EVENTS_TOPIC, "update"), (EVENTS_TOPIC, "delete")]


def test_socket_sends_visible_events_on_connect(client, db, make_token):
    add_profile(db, "s1")
    add_event(db, "s1", title="Mine")
    add_event(db, "s2", title="Not mine")

    with client.websocket_connect(f"/ws/events?token={make_token('s1')}") as ws:
        message = ws.receive_json()

    assert message["change"] == {"op": "snapshot"}
    assert [e["title"] for e in message["events"]] == ["Mine"]


def test_socket_rejects_bad_token(client):
    with pytest.raises(WebSocketDisconnect):
        with client.websocket_connect("/ws/events?token=garbage") as ws:
            ws.receive_json()
