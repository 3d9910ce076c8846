def test_create_room_mints_id_and_socket_url(client):
    response = client.post("/rooms/")
    assert response.status_code == 201
    body = response.json()
    assert len(body["room_id"]) == 32
    assert body["ws_url"].startswith("ws://")
    assert body["ws_url"].endswith("/ws")


def test_created_room_ids_are_distinct(client):
    first = client.post("/rooms/").json()["room_id"]
    second = client.post("/rooms/").json()["room_id"]
    assert first != second


def test_unknown_room_is_not_found(client):
    response = client.get("/rooms/nope")
    assert response.status_code == 404
    assert response.json()["detail"] == "Room not found"


def test_minted_room_has_no_roster_until_someone_joins(client):
    room_id = client.post("/rooms/").json()["room_id"]
    assert client.get(f"/rooms/{room_id}").status_code == 404


def test_room_details_list_joined_users(client):
    room_id = client.post("/rooms/").json()["room_id"]
    with client.websocket_connect("/ws") as ws:
        connection_id = ws.receive_json()["data"]["connectionId"]
        ws.send_json({"event": "join", "data": {"roomId": room_id, "displayName": "Alice"}})
        assert ws.receive_json()["event"] == "joined"

        body = client.get(f"/rooms/{room_id}").json()
        assert body["room_id"] == room_id
        assert body["online_users_count"] == 1
        assert body["online_users"][0]["connection_id"] == connection_id
        assert body["online_users"][0]["display_name"] == "Alice"

        health = client.get("/health").json()
        assert health == {"status": "ok", "backend": "memory", "rooms": 1}


def test_health_on_idle_relay(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok", "backend": "memory", "rooms": 0}
