"""Tests for SignalingRelay dispatch."""

import orjson
import pytest

from app.domain.live.relay.signaling_relay import SignalingRelay
from app.domain.live.session.session_models import UNASSIGNED, BroadcasterRole, ViewerRole
from app.domain.live.session.session_registry import SessionRegistry
from app.schemas.signaling import MessageKind as K
from tests.fixtures.relay_fixtures import kinds, msg, to


@pytest.fixture
def conns(relay: SignalingRelay) -> dict[str, str]:
    return {name: relay.connect(name) for name in ("B", "B2", "V1", "V2", "X")}


class TestScenarios:
    def test_broadcast_lifecycle(self, relay: SignalingRelay, registry: SessionRegistry, conns):
        relay.handle("B", msg(K.START_STREAM, "main"))

        out = relay.handle("V1", msg(K.JOIN_STREAM, "main"))
        assert to(out, "V1")[0].kind == K.STREAM_STATUS
        assert to(out, "V1")[0].payload is True

        out = relay.handle("B", msg(K.OFFER, "main", payload="X"))
        offers = to(out, "V1")
        assert len(offers) == 1
        assert offers[0].payload == "X"
        assert offers[0].from_id == "B"

        out = relay.handle("V1", msg(K.ANSWER, "main", payload="Y"))
        answers = to(out, "B")
        assert len(answers) == 1
        assert answers[0].payload == "Y"
        assert answers[0].to_frame()["data"]["viewerId"] == "V1"

        out = relay.handle("B", msg(K.END_STREAM, "main"))
        assert kinds(out, "V1") == [K.END_STREAM, K.STREAM_STATUS]
        assert to(out, "V1")[1].payload is False
        assert registry.get_session("main") is None

    def test_viewers_waiting_before_broadcaster(
        self, relay: SignalingRelay, registry: SessionRegistry, conns
    ):
        relay.handle("V1", msg(K.JOIN_STREAM, "main"))
        relay.handle("V2", msg(K.JOIN_STREAM, "main"))

        out = relay.handle("B", msg(K.START_STREAM, "main"))
        for viewer in ("V1", "V2"):
            status = to(out, viewer)
            assert [m.kind for m in status] == [K.STREAM_STATUS]
            assert status[0].payload is True

        counts = [m for m in to(out, "B") if m.kind == K.VIEWER_COUNT]
        assert [m.payload for m in counts] == [2]

        out = relay.handle("B", msg(K.OFFER, "main", payload="X"))
        assert sorted(d.target_id for d in out) == ["V1", "V2"]
        assert all(d.message.from_id == "B" for d in out)

        a1 = relay.handle("V1", msg(K.ANSWER, "main", payload="Y1"))
        a2 = relay.handle("V2", msg(K.ANSWER, "main", payload="Y2"))
        assert [m.from_id for m in to(a1, "B")] == ["V1"]
        assert [m.from_id for m in to(a2, "B")] == ["V2"]

    def test_join_without_broadcaster(self, relay: SignalingRelay, registry: SessionRegistry, conns):
        out = relay.handle("V1", msg(K.JOIN_STREAM, "lonely"))

        assert len(out) == 1
        assert out[0].target_id == "V1"
        assert out[0].message.kind == K.STREAM_STATUS
        assert out[0].message.payload is False

        session = registry.get_session("lonely")
        assert session.active is False
        assert session.viewer_count == 1


class TestStartStream:
    def test_default_stream_id(self, relay: SignalingRelay, registry: SessionRegistry, conns):
        relay.handle("B", msg(K.START_STREAM))

        assert registry.role_of("B") == BroadcasterRole("main-stream")

    def test_alias_join_broadcaster(self, relay: SignalingRelay, registry: SessionRegistry, conns):
        relay.handle_frame("B", '{"event": "join-broadcaster", "data": "s1"}')

        assert registry.broadcaster_of("s1") == "B"

    def test_viewer_joined_per_waiting_viewer(self, relay: SignalingRelay, conns):
        relay.handle("V2", msg(K.JOIN_STREAM, "s1"))
        relay.handle("V1", msg(K.JOIN_STREAM, "s1"))

        out = relay.handle("B", msg(K.START_STREAM, "s1"))

        joined = [m.payload for m in to(out, "B") if m.kind == K.VIEWER_JOINED]
        assert joined == ["V1", "V2"]

    def test_takeover_notifies_replaced_broadcaster(
        self, relay: SignalingRelay, registry: SessionRegistry, conns
    ):
        relay.handle("B", msg(K.START_STREAM, "s1"))
        relay.handle("V1", msg(K.JOIN_STREAM, "s1"))

        out = relay.handle("B2", msg(K.START_STREAM, "s1"))

        assert kinds(out, "B") == [K.ERROR, K.STREAM_STATUS]
        assert to(out, "B")[1].payload is False
        assert registry.broadcaster_of("s1") == "B2"
        assert registry.role_of("B") is UNASSIGNED
        assert to(out, "V1")[0].payload is True

        # The replaced broadcaster can no longer offer
        out = relay.handle("B", msg(K.OFFER, "s1", payload="stale"))
        assert kinds(out, "B") == [K.ERROR]
        assert to(out, "V1") == []

    def test_viewer_switching_to_broadcaster_leaves_first(
        self, relay: SignalingRelay, registry: SessionRegistry, conns
    ):
        relay.handle("B", msg(K.START_STREAM, "s1"))
        relay.handle("V1", msg(K.JOIN_STREAM, "s1"))

        out = relay.handle("V1", msg(K.START_STREAM, "s2"))

        assert [m.kind for m in to(out, "B")] == [K.VIEWER_COUNT, K.VIEWER_LEFT]
        assert registry.viewer_count("s1") == 0
        assert registry.role_of("V1") == BroadcasterRole("s2")

    def test_reconnect_resume(self, relay: SignalingRelay, registry: SessionRegistry, conns):
        relay.handle("B", msg(K.START_STREAM, "s1"))
        relay.handle("V1", msg(K.JOIN_STREAM, "s1"))

        out = relay.disconnect("B")
        assert kinds(out, "V1") == [K.END_STREAM, K.STREAM_STATUS]

        # V1 re-issues its intent, then the broadcaster comes back on a new connection
        relay.handle("V1", msg(K.JOIN_STREAM, "s1"))
        relay.connect("B-again")
        out = relay.handle("B-again", msg(K.START_STREAM, "s1"))

        assert to(out, "V1")[0].payload is True
        assert [m.payload for m in to(out, "B-again") if m.kind == K.VIEWER_JOINED] == ["V1"]


class TestJoinStream:
    def test_notifies_broadcaster(self, relay: SignalingRelay, conns):
        relay.handle("B", msg(K.START_STREAM, "s1"))

        out = relay.handle("V1", msg(K.JOIN_STREAM, "s1"))

        to_b = to(out, "B")
        assert [m.kind for m in to_b] == [K.VIEWER_COUNT, K.VIEWER_JOINED]
        assert to_b[0].payload == 1
        assert to_b[1].payload == "V1"

    def test_rejoin_same_stream_is_idempotent(
        self, relay: SignalingRelay, registry: SessionRegistry, conns
    ):
        relay.handle("B", msg(K.START_STREAM, "s1"))
        relay.handle("V1", msg(K.JOIN_STREAM, "s1"))

        out = relay.handle("V1", msg(K.JOIN_STREAM, "s1"))

        assert registry.viewer_count("s1") == 1
        assert to(out, "B")[0].payload == 1

    def test_switch_stream(self, relay: SignalingRelay, registry: SessionRegistry, conns):
        relay.handle("V1", msg(K.JOIN_STREAM, "s1"))

        relay.handle("V1", msg(K.JOIN_STREAM, "s2"))

        assert registry.get_session("s1") is None
        assert registry.role_of("V1") == ViewerRole("s2")

    def test_broadcaster_joining_as_viewer_ends_its_stream(
        self, relay: SignalingRelay, registry: SessionRegistry, conns
    ):
        relay.handle("B", msg(K.START_STREAM, "s1"))
        relay.handle("V1", msg(K.JOIN_STREAM, "s1"))

        out = relay.handle("B", msg(K.JOIN_STREAM, "s2"))

        assert kinds(out, "V1") == [K.END_STREAM, K.STREAM_STATUS]
        assert registry.get_session("s1") is None
        assert registry.role_of("B") == ViewerRole("s2")


class TestLeaveStream:
    def test_viewer_leaves(self, relay: SignalingRelay, registry: SessionRegistry, conns):
        relay.handle("B", msg(K.START_STREAM, "s1"))
        relay.handle("V1", msg(K.JOIN_STREAM, "s1"))

        out = relay.handle("V1", msg(K.LEAVE_STREAM, "s1"))

        assert [m.kind for m in to(out, "B")] == [K.VIEWER_COUNT, K.VIEWER_LEFT]
        assert to(out, "B")[0].payload == 0
        assert registry.role_of("V1") is UNASSIGNED

    def test_join_leave_restores_count(self, relay: SignalingRelay, registry: SessionRegistry, conns):
        relay.handle("B", msg(K.START_STREAM, "s1"))
        relay.handle("V1", msg(K.JOIN_STREAM, "s1"))
        before = registry.viewer_count("s1")

        relay.handle("V2", msg(K.JOIN_STREAM, "s1"))
        relay.handle_frame("V2", '{"event": "leave-viewer", "data": "s1"}')

        assert registry.viewer_count("s1") == before

    def test_broadcaster_leave_ends_stream(
        self, relay: SignalingRelay, registry: SessionRegistry, conns
    ):
        relay.handle("B", msg(K.START_STREAM, "s1"))
        relay.handle("V1", msg(K.JOIN_STREAM, "s1"))

        out = relay.handle("B", msg(K.LEAVE_STREAM))

        assert kinds(out, "V1") == [K.END_STREAM, K.STREAM_STATUS]
        assert registry.get_session("s1") is None

    def test_leave_without_role_is_protocol_error(self, relay: SignalingRelay, conns):
        out = relay.handle("X", msg(K.LEAVE_STREAM, "s1"))

        assert kinds(out, "X") == [K.ERROR]

    def test_leave_other_stream_is_protocol_error(
        self, relay: SignalingRelay, registry: SessionRegistry, conns
    ):
        relay.handle("V1", msg(K.JOIN_STREAM, "s1"))

        out = relay.handle("V1", msg(K.LEAVE_STREAM, "s2"))

        assert kinds(out, "V1") == [K.ERROR]
        assert registry.role_of("V1") == ViewerRole("s1")


class TestOffer:
    def test_offer_reaches_only_its_stream(self, relay: SignalingRelay, conns):
        relay.handle("B", msg(K.START_STREAM, "s1"))
        relay.handle("V1", msg(K.JOIN_STREAM, "s1"))
        relay.handle("B2", msg(K.START_STREAM, "s2"))
        relay.handle("V2", msg(K.JOIN_STREAM, "s2"))

        out = relay.handle("B", msg(K.OFFER, "s1", payload={"type": "offer", "sdp": "x"}))

        assert [d.target_id for d in out] == ["V1"]
        assert out[0].message.stream_id == "s1"

    def test_targeted_offer(self, relay: SignalingRelay, conns):
        relay.handle("B", msg(K.START_STREAM, "s1"))
        relay.handle("V1", msg(K.JOIN_STREAM, "s1"))
        relay.handle("V2", msg(K.JOIN_STREAM, "s1"))

        out = relay.handle("B", msg(K.OFFER, "s1", to_id="V2", payload="x"))

        assert [d.target_id for d in out] == ["V2"]
        assert out[0].message.to_id == "V2"

    def test_targeted_offer_to_departed_viewer_is_silent(self, relay: SignalingRelay, conns):
        relay.handle("B", msg(K.START_STREAM, "s1"))

        out = relay.handle("B", msg(K.OFFER, "s1", to_id="V1", payload="x"))

        assert out == []

    def test_offer_from_viewer_rejected(self, relay: SignalingRelay, conns):
        relay.handle("B", msg(K.START_STREAM, "s1"))
        relay.handle("V1", msg(K.JOIN_STREAM, "s1"))

        out = relay.handle("V1", msg(K.OFFER, "s1", payload="x"))

        assert kinds(out, "V1") == [K.ERROR]
        assert to(out, "B") == []

    def test_errors_not_echoed_when_disabled(self, registry: SessionRegistry):
        relay = SignalingRelay(registry, echo_protocol_errors=False)
        relay.connect("V1")

        out = relay.handle("V1", msg(K.OFFER, "s1", payload="x"))

        assert out == []


class TestAnswer:
    def test_answer_without_session_dropped(self, relay: SignalingRelay, conns):
        out = relay.handle("X", msg(K.ANSWER, "ghost", payload="y"))

        assert kinds(out, "X") == [K.ERROR]

    def test_answer_after_broadcaster_left(self, relay: SignalingRelay, conns):
        relay.handle("V1", msg(K.JOIN_STREAM, "s1"))

        out = relay.handle("V1", msg(K.ANSWER, "s1", payload="y"))

        assert out == []


class TestIceCandidate:
    @pytest.fixture(autouse=True)
    def live(self, relay: SignalingRelay, conns):
        relay.handle("B", msg(K.START_STREAM, "s1"))
        relay.handle("V1", msg(K.JOIN_STREAM, "s1"))
        relay.handle("V2", msg(K.JOIN_STREAM, "s1"))

    def test_broadcaster_unicast(self, relay: SignalingRelay):
        out = relay.handle("B", msg(K.ICE_CANDIDATE, "s1", to_id="V2", payload={"candidate": "c"}))

        assert [d.target_id for d in out] == ["V2"]
        assert out[0].message.from_id == "B"

    def test_broadcaster_fan_out(self, relay: SignalingRelay):
        out = relay.handle("B", msg(K.ICE_CANDIDATE, "s1", payload={"candidate": "c"}))

        assert [d.target_id for d in out] == ["V1", "V2"]

    def test_viewer_to_broadcaster(self, relay: SignalingRelay):
        out = relay.handle("V1", msg(K.ICE_CANDIDATE, "s1", payload={"candidate": "c"}))

        assert [d.target_id for d in out] == ["B"]
        assert out[0].message.from_id == "V1"
        assert out[0].message.to_id == "B"

    def test_unicast_to_unknown_viewer_is_silent(self, relay: SignalingRelay):
        out = relay.handle("B", msg(K.ICE_CANDIDATE, "s1", to_id="gone", payload={"candidate": "c"}))

        assert out == []

    def test_outsider_rejected(self, relay: SignalingRelay):
        out = relay.handle("X", msg(K.ICE_CANDIDATE, "s1", payload={"candidate": "c"}))

        assert kinds(out, "X") == [K.ERROR]


class TestEndStream:
    def test_non_broadcaster_rejected(self, relay: SignalingRelay, registry: SessionRegistry, conns):
        relay.handle("B", msg(K.START_STREAM, "s1"))
        relay.handle("V1", msg(K.JOIN_STREAM, "s1"))

        out = relay.handle("V1", msg(K.END_STREAM, "s1"))

        assert [d.target_id for d in out] == ["V1"]
        assert out[0].message.kind == K.ERROR
        assert registry.get_session("s1").active is True

    def test_unknown_stream_rejected(self, relay: SignalingRelay, conns):
        out = relay.handle("B", msg(K.END_STREAM, "nope"))

        assert kinds(out, "B") == [K.ERROR]


class TestDisconnect:
    def test_broadcaster_disconnect_notifies_each_viewer_once(
        self, relay: SignalingRelay, registry: SessionRegistry, conns
    ):
        relay.handle("B", msg(K.START_STREAM, "s1"))
        relay.handle("V1", msg(K.JOIN_STREAM, "s1"))
        relay.handle("V2", msg(K.JOIN_STREAM, "s1"))

        out = relay.disconnect("B")

        for viewer in ("V1", "V2"):
            assert kinds(out, viewer) == [K.END_STREAM, K.STREAM_STATUS]
            assert to(out, viewer)[1].payload is False
        assert registry.get_session("s1") is None
        assert relay.is_connected("B") is False

    def test_viewer_disconnect_updates_count(self, relay: SignalingRelay, conns):
        relay.handle("B", msg(K.START_STREAM, "s1"))
        relay.handle("V1", msg(K.JOIN_STREAM, "s1"))
        relay.handle("V2", msg(K.JOIN_STREAM, "s1"))

        out = relay.disconnect("V1")

        assert to(out, "B")[0].kind == K.VIEWER_COUNT
        assert to(out, "B")[0].payload == 1
        assert to(out, "B")[1].payload == "V1"

    def test_viewer_disconnect_without_broadcaster(self, relay: SignalingRelay, conns):
        relay.handle("V1", msg(K.JOIN_STREAM, "s1"))

        assert relay.disconnect("V1") == []

    def test_unassigned_disconnect(self, relay: SignalingRelay, conns):
        assert relay.disconnect("X") == []

    def test_messages_from_unknown_connection_dropped(self, relay: SignalingRelay):
        assert relay.handle("ghost", msg(K.START_STREAM, "s1")) == []


class TestFrames:
    def test_malformed_json(self, relay: SignalingRelay, conns):
        out = relay.handle_frame("X", "{not json")

        assert kinds(out, "X") == [K.ERROR]

    def test_unknown_event(self, relay: SignalingRelay, conns):
        out = relay.handle_frame("X", orjson.dumps({"event": "dance"}))

        assert kinds(out, "X") == [K.ERROR]

    def test_relay_only_event_from_client(self, relay: SignalingRelay, conns):
        out = relay.handle_frame("X", '{"event": "viewer-count", "data": 3}')

        assert kinds(out, "X") == [K.ERROR]

    def test_oversized_frame(self, registry: SessionRegistry):
        relay = SignalingRelay(registry, max_message_bytes=32)
        relay.connect("X")

        out = relay.handle_frame("X", '{"event": "start-stream", "data": "' + "s" * 64 + '"}')

        assert kinds(out, "X") == [K.ERROR]
        assert registry.list_sessions() == []

    def test_bad_frame_does_not_affect_other_sessions(
        self, relay: SignalingRelay, registry: SessionRegistry, conns
    ):
        relay.handle("B", msg(K.START_STREAM, "s1"))

        relay.handle_frame("X", '{"event": "offer", "data": {"streamId": "s1"}}')

        assert registry.get_session("s1").active is True
        assert relay.is_connected("X") is True


class TestProperties:
    def test_at_most_one_broadcaster(self, relay: SignalingRelay, registry: SessionRegistry):
        ids = [relay.connect(f"c{i}") for i in range(4)]
        for step, conn_id in enumerate(ids * 3):
            if step % 3 == 2:
                relay.disconnect(conn_id)
                relay.connect(conn_id)
            else:
                relay.handle(conn_id, msg(K.START_STREAM, "s"))

            holders = [c for c in ids if registry.role_of(c) == BroadcasterRole("s")]
            assert len(holders) <= 1
            assert registry.broadcaster_of("s") in (holders[0] if holders else None, None)

    def test_viewer_count_matches_set(self, relay: SignalingRelay, registry: SessionRegistry):
        ids = [relay.connect(f"v{i}") for i in range(5)]
        relay.connect("B")
        relay.handle("B", msg(K.START_STREAM, "s"))
        for conn_id in ids:
            relay.handle(conn_id, msg(K.JOIN_STREAM, "s"))
        for conn_id in ids[::2]:
            relay.handle(conn_id, msg(K.LEAVE_STREAM, "s"))

        assert registry.viewer_count("s") == len(registry.viewer_ids("s")) == 2

    def test_join_start_order_does_not_matter(self):
        first, second = SessionRegistry(), SessionRegistry()
        r1, r2 = SignalingRelay(first), SignalingRelay(second)
        for r in (r1, r2):
            r.connect("B")
            r.connect("V")

        r1.handle("V", msg(K.JOIN_STREAM, "s"))
        r1.handle("B", msg(K.START_STREAM, "s"))
        r2.handle("B", msg(K.START_STREAM, "s"))
        r2.handle("V", msg(K.JOIN_STREAM, "s"))

        assert first.get_session("s") == second.get_session("s")
        assert first.role_of("V") == second.role_of("V")

    def test_stats(self, relay: SignalingRelay, conns):
        relay.handle("B", msg(K.START_STREAM, "s1"))
        relay.handle("V1", msg(K.JOIN_STREAM, "s1"))

        assert relay.get_stats() == {
            "connections": 5,
            "streams": 1,
            "active_streams": 1,
            "viewers": 1,
        }
