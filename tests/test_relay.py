"""Tests covering the signaling relay over its WebSocket and HTTP surface."""

from __future__ import annotations

from fastapi.testclient import TestClient

from duet import protocol
from duet.api.server import RelayManager, create_app


def make_client() -> TestClient:
    # No keepalive pings so every frame a test reads is one it caused.
    manager = RelayManager(ping_interval=0)
    return TestClient(create_app(manager=manager))


def connect(client: TestClient):
    return client.websocket_connect("/ws")


def welcome_id(ws) -> str:
    message = ws.receive_json()
    assert message["type"] == protocol.WELCOME
    return message["sessionId"]


def sync(ws) -> None:
    """Round-trip a ping so every earlier reply to ``ws`` has been read."""

    ws.send_json({"type": "ping"})
    assert ws.receive_json()["type"] == protocol.PONG


def test_second_joiner_learns_about_first_and_first_is_notified() -> None:
    with make_client() as client:
        with connect(client) as ws_a, connect(client) as ws_b:
            a = welcome_id(ws_a)
            b = welcome_id(ws_b)

            ws_a.send_json({"type": "join", "roomId": "X7Q"})
            assert ws_a.receive_json() == {"type": "joined", "roomId": "X7Q"}

            ws_b.send_json({"type": "join", "roomId": "X7Q"})
            assert ws_b.receive_json() == {"type": "joined", "roomId": "X7Q"}
            assert ws_b.receive_json() == {"type": "other-user", "peerId": a}
            assert ws_a.receive_json() == {"type": "user-joined", "peerId": b}


def test_negotiation_payloads_are_relayed_verbatim() -> None:
    candidate = {
        "candidate": "candidate:1 1 udp 2122260223 192.168.1.2 54321 typ host",
        "sdpMid": "0",
        "sdpMLineIndex": 0,
        "usernameFragment": None,
    }
    offer = {"type": "offer", "sdp": "v=0\r\no=- 1 1 IN IP4 0.0.0.0\r\n"}

    with make_client() as client:
        with connect(client) as ws_a, connect(client) as ws_b:
            a = welcome_id(ws_a)
            b = welcome_id(ws_b)

            ws_b.send_json({"type": "ice-candidate", "target": a, "candidate": candidate})
            assert ws_a.receive_json() == {
                "type": "ice-candidate",
                "sender": b,
                "candidate": candidate,
            }

            ws_a.send_json({"type": "offer", "target": b, "sdp": offer})
            assert ws_b.receive_json() == {"type": "offer", "sender": a, "sdp": offer}


def test_peer_is_told_when_other_side_disconnects() -> None:
    with make_client() as client:
        with connect(client) as ws_a:
            a = welcome_id(ws_a)
            ws_a.send_json({"type": "join", "roomId": "BYE"})
            ws_a.receive_json()

            with connect(client) as ws_b:
                b = welcome_id(ws_b)
                ws_b.send_json({"type": "join", "roomId": "BYE"})
                ws_b.receive_json()
                ws_b.receive_json()
                assert ws_a.receive_json()["type"] == protocol.USER_JOINED

            assert ws_a.receive_json() == {"type": "user-left", "peerId": b}
            assert client.get("/rooms/BYE").json()["members"] == [a]


def test_leave_notifies_peer_and_frees_the_slot() -> None:
    with make_client() as client:
        with connect(client) as ws_a, connect(client) as ws_b, connect(client) as ws_c:
            welcome_id(ws_a)
            b = welcome_id(ws_b)
            welcome_id(ws_c)

            ws_a.send_json({"type": "join", "roomId": "SLOT"})
            ws_a.receive_json()
            ws_b.send_json({"type": "join", "roomId": "SLOT"})
            ws_b.receive_json()
            ws_b.receive_json()
            ws_a.receive_json()

            ws_b.send_json({"type": "leave"})
            assert ws_a.receive_json() == {"type": "user-left", "peerId": b}

            ws_c.send_json({"type": "join", "roomId": "SLOT"})
            assert ws_c.receive_json() == {"type": "joined", "roomId": "SLOT"}


def test_third_client_gets_room_full() -> None:
    with make_client() as client:
        with connect(client) as ws_a, connect(client) as ws_b, connect(client) as ws_c:
            for ws in (ws_a, ws_b, ws_c):
                welcome_id(ws)

            ws_a.send_json({"type": "join", "roomId": "FULL"})
            ws_a.receive_json()
            ws_b.send_json({"type": "join", "roomId": "FULL"})
            ws_b.receive_json()

            ws_c.send_json({"type": "join", "roomId": "FULL"})
            assert ws_c.receive_json() == {"type": "room-full", "roomId": "FULL"}
            sync(ws_c)

            members = client.get("/rooms/FULL").json()
            assert len(members["members"]) == 2


def test_invalid_join_and_double_join_are_acknowledged_with_errors() -> None:
    with make_client() as client:
        with connect(client) as ws:
            welcome_id(ws)

            ws.send_json({"type": "join", "roomId": "   "})
            reply = ws.receive_json()
            assert reply["type"] == protocol.ERROR
            assert reply["payload"]["code"] == protocol.E_INVALID_PAYLOAD

            ws.send_json({"type": "join", "roomId": "ONE"})
            ws.receive_json()
            ws.send_json({"type": "join", "roomId": "TWO"})
            reply = ws.receive_json()
            assert reply["payload"]["code"] == protocol.E_ALREADY_IN_ROOM
            assert reply["payload"]["roomId"] == "TWO"


def test_messages_for_unknown_targets_and_garbage_are_dropped() -> None:
    with make_client() as client:
        with connect(client) as ws:
            welcome_id(ws)

            ws.send_json({"type": "offer", "target": "nobody", "sdp": {"type": "offer", "sdp": ""}})
            ws.send_json({"type": "answer", "sdp": {"type": "answer", "sdp": ""}})
            ws.send_text("not json")
            ws.send_json({"type": "mystery"})

            # Only the pong comes back; nothing above produced a reply.
            sync(ws)


def test_health_and_room_endpoints() -> None:
    with make_client() as client:
        assert client.get("/healthz").json() == {"status": "ok", "rooms": [], "sessions": 0}
        assert client.get("/rooms/NOPE").status_code == 404

        with connect(client) as ws:
            session_id = welcome_id(ws)
            ws.send_json({"type": "join", "roomId": "HERE"})
            ws.receive_json()

            health = client.get("/healthz").json()
            assert health["rooms"] == ["HERE"]
            assert health["sessions"] == 1
            assert client.get("/rooms/HERE").json() == {"roomId": "HERE", "members": [session_id]}
