import http.client
import json
import threading
import time
from http.server import ThreadingHTTPServer

import pytest

from lookupd.http import HTTPApi, HTTPError, get_topic_channel_args, make_request_handler
from lookupd.lookup_protocol import VERSION
from lookupd.options import Options
from lookupd.registration_db import PeerInfo, Producer, Registration, RegistrationDB

TCP_PORT = 5000
HTTP_PORT = 5555
HOST_ADDR = "ip.address"


@pytest.fixture
def api():
    lines = []
    options = Options(logger=lines.append, broadcast_address="127.0.0.1")
    return HTTPApi(RegistrationDB(), options)


def make_topic(api, topic):
    api.db.add_registration(Registration("topic", topic, ""))


def make_channel(api, topic, channel):
    api.db.add_registration(Registration("channel", topic, channel))
    make_topic(api, topic)


def register_peer(api, topic, channel="", last_update=None):
    info = PeerInfo(
        id="10.0.0.1:4000",
        remote_address="10.0.0.1:4000",
        hostname=HOST_ADDR,
        broadcast_address=HOST_ADDR,
        tcp_port=TCP_PORT,
        http_port=HTTP_PORT,
        version="fake-version",
        last_update=time.time_ns() if last_update is None else last_update,
    )
    api.db.add_producer(Registration("client", "", ""), Producer(info))
    if channel:
        api.db.add_producer(Registration("channel", topic, channel), Producer(info))
    api.db.add_producer(Registration("topic", topic, ""), Producer(info))
    return info


def message(response):
    return json.loads(response[2])["message"]


def test_ping(api):
    status, headers, body = api.handle("GET", "/ping")
    assert status == 200
    assert body == b"OK"


def test_info(api):
    status, _, body = api.handle("GET", "/info")
    assert status == 200
    assert json.loads(body)["version"] == VERSION


def test_create_topic(api):
    resp = api.handle("POST", "/topic/create")
    assert resp[0] == 400
    assert message(resp) == "MISSING_ARG_TOPIC"

    resp = api.handle("POST", "/topic/create?topic=sampletopicA$")
    assert resp[0] == 400
    assert message(resp) == "INVALID_ARG_TOPIC"

    resp = api.handle("POST", "/topic/create?topic=sampletopicA")
    assert resp[0] == 200
    assert resp[2] == b""
    assert api.db.find_registrations("topic", "sampletopicA", "").keys() == ["sampletopicA"]


def test_delete_topic(api):
    resp = api.handle("POST", "/topic/delete")
    assert resp[0] == 400
    assert message(resp) == "MISSING_ARG_TOPIC"

    make_topic(api, "sampletopicA")
    resp = api.handle("POST", "/topic/delete?topic=sampletopicA")
    assert resp[0] == 200
    assert resp[2] == b""
    assert len(api.db.find_registrations("topic", "sampletopicA", "")) == 0

    make_channel(api, "sampletopicB", "foobar")
    resp = api.handle("POST", "/topic/delete?topic=sampletopicB")
    assert resp[0] == 200
    assert resp[2] == b""
    assert len(api.db.find_registrations("channel", "sampletopicB", "*")) == 0
    assert len(api.db.find_registrations("topic", "sampletopicB", "")) == 0


def test_get_channels(api):
    resp = api.handle("GET", "/channels")
    assert resp[0] == 400
    assert message(resp) == "MISSING_ARG_TOPIC"

    make_topic(api, "sampletopicA")
    resp = api.handle("GET", "/channels?topic=sampletopicA")
    assert resp[0] == 200
    assert json.loads(resp[2])["channels"] == []

    make_channel(api, "sampletopicB", "foobar")
    resp = api.handle("GET", "/channels?topic=sampletopicB")
    assert resp[0] == 200
    assert json.loads(resp[2])["channels"] == ["foobar"]


def test_create_channel(api):
    resp = api.handle("POST", "/channel/create")
    assert resp[0] == 400
    assert message(resp) == "MISSING_ARG_TOPIC"

    resp = api.handle("POST", "/channel/create?topic=sampletopicB$")
    assert resp[0] == 400
    assert message(resp) == "INVALID_ARG_TOPIC"

    resp = api.handle("POST", "/channel/create?topic=sampletopicB")
    assert resp[0] == 400
    assert message(resp) == "MISSING_ARG_CHANNEL"

    resp = api.handle("POST", "/channel/create?topic=sampletopicB&channel=foobar$")
    assert resp[0] == 400
    assert message(resp) == "INVALID_ARG_CHANNEL"

    resp = api.handle("POST", "/channel/create?topic=sampletopicB&channel=foobar")
    assert resp[0] == 200
    assert resp[2] == b""
    assert api.db.find_registrations("channel", "sampletopicB", "*").subkeys() == ["foobar"]
    assert api.db.find_registrations("topic", "sampletopicB", "").keys() == ["sampletopicB"]


def test_delete_channel(api):
    resp = api.handle("POST", "/channel/delete")
    assert resp[0] == 400
    assert message(resp) == "MISSING_ARG_TOPIC"

    resp = api.handle("POST", "/channel/delete?topic=sampletopicB$")
    assert resp[0] == 400
    assert message(resp) == "INVALID_ARG_TOPIC"

    resp = api.handle("POST", "/channel/delete?topic=sampletopicB")
    assert resp[0] == 400
    assert message(resp) == "MISSING_ARG_CHANNEL"

    resp = api.handle("POST", "/channel/delete?topic=sampletopicB&channel=foobar$")
    assert resp[0] == 400
    assert message(resp) == "INVALID_ARG_CHANNEL"

    target = "/channel/delete?topic=sampletopicB&channel=foobar"
    resp = api.handle("POST", target)
    assert resp[0] == 404
    assert message(resp) == "CHANNEL_NOT_FOUND"

    make_channel(api, "sampletopicB", "foobar")
    resp = api.handle("POST", target)
    assert resp[0] == 200
    assert resp[2] == b""
    assert len(api.db.find_registrations("channel", "sampletopicB", "foobar")) == 0


def test_lookup_unknown_topic(api):
    resp = api.handle("GET", "/lookup?topic=missing")
    assert resp[0] == 404
    assert message(resp) == "TOPIC_NOT_FOUND"


def test_lookup_returns_channels_and_producers(api):
    register_peer(api, "connectmsg", "channel1")
    resp = api.handle("GET", "/lookup?topic=connectmsg")
    assert resp[0] == 200
    doc = json.loads(resp[2])
    assert doc["channels"] == ["channel1"]
    assert len(doc["producers"]) == 1
    producer = doc["producers"][0]
    assert producer["tcp_port"] == TCP_PORT
    assert producer["http_port"] == HTTP_PORT
    assert producer["broadcast_address"] == HOST_ADDR
    assert producer["version"] == "fake-version"


def test_topics_lists_registered(api):
    register_peer(api, "connectmsg", "channel1")
    resp = api.handle("GET", "/topics")
    assert json.loads(resp[2]) == {"topics": ["connectmsg"]}


def test_tombstone_hides_producer_from_lookup(api):
    register_peer(api, "tombstone_recover", "channel1")
    register_peer(api, "tombstone_recover2", "channel2")
    resp = api.handle(
        "POST", f"/topic/tombstone?topic=tombstone_recover&node={HOST_ADDR}:{HTTP_PORT}"
    )
    assert resp[0] == 200

    doc = json.loads(api.handle("GET", "/lookup?topic=tombstone_recover")[2])
    assert doc["producers"] == []
    doc = json.loads(api.handle("GET", "/lookup?topic=tombstone_recover2")[2])
    assert len(doc["producers"]) == 1


def test_tombstone_requires_node(api):
    resp = api.handle("POST", "/topic/tombstone?topic=t")
    assert resp[0] == 400
    assert message(resp) == "MISSING_ARG_NODE"


def test_tombstone_expires(api):
    api.options.tombstone_lifetime = 0.05
    register_peer(api, "tombstone_recover", "channel1")
    api.handle("POST", f"/topic/tombstone?topic=tombstone_recover&node={HOST_ADDR}:{HTTP_PORT}")
    assert json.loads(api.handle("GET", "/lookup?topic=tombstone_recover")[2])["producers"] == []
    time.sleep(0.075)
    doc = json.loads(api.handle("GET", "/lookup?topic=tombstone_recover")[2])
    assert len(doc["producers"]) == 1


def test_nodes_reports_tombstones(api):
    register_peer(api, "inactive_nodes", "channel1")
    doc = json.loads(api.handle("GET", "/nodes")[2])
    assert len(doc["producers"]) == 1
    assert doc["producers"][0]["topics"] == ["inactive_nodes"]
    assert doc["producers"][0]["tombstones"] == [False]

    api.handle("POST", f"/topic/tombstone?topic=inactive_nodes&node={HOST_ADDR}:{HTTP_PORT}")
    doc = json.loads(api.handle("GET", "/nodes")[2])
    assert len(doc["producers"]) == 1
    assert doc["producers"][0]["tombstones"] == [True]


def test_nodes_drops_inactive(api):
    api.options.inactive_producer_timeout = 0.2
    register_peer(api, "inactive_nodes", "channel1", last_update=time.time_ns() - 10**9)
    doc = json.loads(api.handle("GET", "/nodes")[2])
    assert doc["producers"] == []


def test_debug_groups_by_registration(api):
    info = register_peer(api, "t", "c")
    doc = json.loads(api.handle("GET", "/debug")[2])
    assert set(doc) == {"client::", "topic:t:", "channel:t:c"}
    entry = doc["topic:t:"][0]
    assert entry["id"] == info.id
    assert entry["tombstoned"] is False
    assert entry["last_update"] == info.last_update


def test_unknown_path_and_method(api):
    resp = api.handle("GET", "/nope")
    assert resp[0] == 404
    assert message(resp) == "NOT_FOUND"

    resp = api.handle("GET", "/topic/create?topic=x")
    assert resp[0] == 405
    assert message(resp) == "METHOD_NOT_ALLOWED"
    assert "POST" in resp[1]["Allow"]


def test_bad_query_is_invalid_request(api):
    resp = api.handle("GET", "/channels?topic=%zz")
    assert resp[0] == 400
    assert message(resp) == "INVALID_REQUEST"


def test_get_topic_channel_args():
    assert get_topic_channel_args({"topic": ["t"], "channel": ["c"]}) == ("t", "c")
    with pytest.raises(HTTPError) as info:
        get_topic_channel_args({"topic": ["t"]})
    assert info.value.code == 400
    assert info.value.message == "MISSING_ARG_CHANNEL"


def test_request_handler_over_socket(api):
    server = ThreadingHTTPServer(("127.0.0.1", 0), make_request_handler(api))
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    try:
        conn = http.client.HTTPConnection("127.0.0.1", server.server_address[1], timeout=5)
        conn.request("GET", "/ping")
        resp = conn.getresponse()
        assert resp.status == 200
        assert resp.read() == b"OK"

        conn.request("POST", "/topic/create")
        resp = conn.getresponse()
        assert resp.status == 400
        assert json.loads(resp.read())["message"] == "MISSING_ARG_TOPIC"
        conn.close()
    finally:
        server.shutdown()
        server.server_close()