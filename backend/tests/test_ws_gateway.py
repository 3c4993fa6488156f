"""WebSocket gateway tests: handshake, join, send fan-out, typing and notifications."""
import pytest
from starlette.websockets import WebSocketDisconnect

from conftest import auth


def connect(api, token):
    return api.websocket_connect("/ws/chat", headers=auth(token))


def request(ws, event, data, ref):
    ws.send_json({"event": event, "data": data, "ref": ref})


def join(ws, target_id, ref=1):
    request(ws, "chat:join", {"targetUserId": target_id}, ref)
    reply = ws.receive_json()
    assert reply["event"] == "ack" and reply["ref"] == ref
    assert reply["data"]["ok"] is True, reply
    return reply["data"]["chatId"]


def test_missing_token_is_rejected(api):
    with pytest.raises(WebSocketDisconnect) as exc:
        with api.websocket_connect("/ws/chat"):
            pass
    assert exc.value.code == 4401


def test_invalid_token_is_rejected(api):
    with pytest.raises(WebSocketDisconnect) as exc:
        with connect(api, "not-a-jwt"):
            pass
    assert exc.value.code == 4401


def test_token_query_parameter(api, people):
    token = people.tokens[people.customer.id]
    with api.websocket_connect(f"/ws/chat?token={token}") as ws:
        assert join(ws, people.support.id) > 0


def test_join_send_broadcast_and_ack(api, people):
    with connect(api, people.tokens[people.customer.id]) as carla, \
         connect(api, people.tokens[people.support.id]) as sam:
        chat_id = join(carla, people.support.id)
        assert join(sam, people.customer.id) == chat_id

        request(carla, "message:send", {"chatId": chat_id, "content": "  Need a late checkout "}, 2)

        pushed = carla.receive_json()
        assert pushed["event"] == "message:new"
        ack = carla.receive_json()
        assert ack["event"] == "ack" and ack["ref"] == 2
        assert ack["data"]["ok"] is True
        message = ack["data"]["message"]
        assert message["content"] == "Need a late checkout"
        assert message["status"] == "SEND"
        assert pushed["data"]["id"] == message["id"]

        received = sam.receive_json()
        assert received["event"] == "message:new"
        assert received["data"]["id"] == message["id"]
        assert received["data"]["sender"]["display_name"] == "Carla"


def test_sequential_sends_arrive_in_order(api, people):
    with connect(api, people.tokens[people.customer.id]) as carla, \
         connect(api, people.tokens[people.owner.id]) as olga:
        chat_id = join(carla, people.owner.id)
        join(olga, people.customer.id)

        for i in range(3):
            request(carla, "message:send", {"chatId": chat_id, "content": f"m{i}"}, 10 + i)
        contents = [olga.receive_json()["data"]["content"] for _ in range(3)]
        assert contents == ["m0", "m1", "m2"]


def test_disallowed_roles_are_refused(api, people):
    with connect(api, people.tokens[people.customer.id]) as carla:
        chat_id = join(carla, people.customer2.id)
        request(carla, "message:send", {"chatId": chat_id, "content": "hello"}, 2)
        ack = carla.receive_json()
        assert ack["event"] == "ack"
        assert ack["data"] == {"ok": False, "error": "You are not allowed to message this user", "code": "FORBIDDEN"}

    resp = api.get(f"/messages/{chat_id}", headers=auth(people.tokens[people.customer.id]))
    assert resp.json()["messages"] == []


def test_send_requires_joined_room(api, people):
    with connect(api, people.tokens[people.customer.id]) as carla:
        request(carla, "message:send", {"chatId": 1, "content": "hi"}, 1)
        assert carla.receive_json()["data"]["code"] == "INVALID_OPERATION"

        chat_id = join(carla, people.support.id, ref=2)
        request(carla, "message:send", {"chatId": chat_id + 1, "content": "hi"}, 3)
        assert carla.receive_json()["data"]["code"] == "FORBIDDEN"


def test_join_errors(api, people):
    with connect(api, people.tokens[people.customer.id]) as carla:
        request(carla, "chat:join", {"targetUserId": people.customer.id}, 1)
        assert carla.receive_json()["data"]["code"] == "INVALID_OPERATION"

        request(carla, "chat:join", {"targetUserId": 31337}, 2)
        data = carla.receive_json()["data"]
        assert data["code"] == "NOT_FOUND"
        assert "31337" in data["error"]

        request(carla, "chat:join", {"targetUserId": "abc"}, 3)
        assert carla.receive_json()["data"]["code"] == "INVALID_ARGUMENT"


def test_typing_reaches_others_only(api, people):
    with connect(api, people.tokens[people.customer.id]) as carla, \
         connect(api, people.tokens[people.support.id]) as sam:
        chat_id = join(carla, people.support.id)
        join(sam, people.customer.id)

        carla.send_json({"event": "typing", "data": {"chatId": chat_id, "typing": True}})
        event = sam.receive_json()
        assert event["event"] == "typing"
        assert event["data"] == {"userId": people.customer.id, "chatId": chat_id, "typing": True, "userName": "Carla"}

        # the next frame Carla sees is the ack, not her own typing event
        join(carla, people.support.id, ref=5)


def test_absent_participant_gets_notification(api, people):
    with connect(api, people.tokens[people.customer.id]) as carla, \
         connect(api, people.tokens[people.support.id]) as sam:
        chat_id = join(carla, people.support.id)

        request(carla, "message:send", {"chatId": chat_id, "content": "anyone there?"}, 2)
        assert carla.receive_json()["event"] == "message:new"
        assert carla.receive_json()["event"] == "ack"

        note = sam.receive_json()
        assert note["event"] == "notify:new-message"
        assert note["data"]["type"] == "new-message"
        assert note["data"]["chatId"] == chat_id
        assert note["data"]["fromUserId"] == people.customer.id
        assert note["data"]["title"] == "New message from Carla"
        assert note["data"]["message"] == "anyone there?"


def test_http_send_fans_out(api, people):
    with connect(api, people.tokens[people.support.id]) as sam:
        chat_id = join(sam, people.owner.id)
        resp = api.post(
            f"/messages/{chat_id}", json={"content": "via http"}, headers=auth(people.tokens[people.owner.id])
        )
        assert resp.status_code == 200
        pushed = sam.receive_json()
        assert pushed["event"] == "message:new"
        assert pushed["data"]["id"] == resp.json()["id"]


def test_malformed_frames(api, people):
    with connect(api, people.tokens[people.customer.id]) as carla:
        carla.send_text("{not json")
        err = carla.receive_json()
        assert err["event"] == "error"
        assert err["data"]["code"] == "INVALID_ARGUMENT"

        request(carla, "no:such-event", {}, 4)
        ack = carla.receive_json()
        assert ack["ref"] == 4
        assert ack["data"]["ok"] is False

        request(carla, "message:send", {"content": "no chat id"}, 5)
        assert carla.receive_json()["data"]["code"] == "INVALID_ARGUMENT"

        # connection is still usable afterwards
        assert join(carla, people.support.id, ref=6) > 0
