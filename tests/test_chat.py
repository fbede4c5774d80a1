def start(client, headers, subject="Invoice question", message="Where is my invoice?"):
    r = client.post("/api/chat/conversations", json={"subject": subject, "message": message}, headers=headers)
    assert r.status_code == 201, r.text
    return r.json()["conversation"]["id"]


def test_user_and_admin_exchange_messages(client, make_user, admin):
    _, user_headers = make_user()
    _, admin_headers = admin
    conv_id = start(client, user_headers)

    reply = client.post(f"/api/chat/conversations/{conv_id}/messages",
                        json={"message": "Sent it again"}, headers=admin_headers)
    assert reply.status_code == 201
    assert reply.json()["message"]["is_admin"] is True

    listed = client.get("/api/chat/conversations", headers=user_headers).json()["conversations"]
    assert listed[0]["unread_count"] == 1
    assert listed[0]["latest_message"]["message"] == "Sent it again"

    client.post(f"/api/chat/conversations/{conv_id}/read", headers=user_headers)
    listed = client.get("/api/chat/conversations", headers=user_headers).json()["conversations"]
    assert listed[0]["unread_count"] == 0

    messages = client.get(f"/api/chat/conversations/{conv_id}/messages", headers=user_headers).json()["messages"]
    assert [m["sender"]["name"] for m in messages] == ["Buyer", "Admin"]


def test_users_cannot_read_other_conversations(client, make_user):
    _, owner_headers = make_user(email="owner@example.com")
    _, other_headers = make_user(email="other@example.com")
    conv_id = start(client, owner_headers)

    assert client.get(f"/api/chat/conversations/{conv_id}", headers=other_headers).status_code == 403
    assert client.get("/api/chat/conversations", headers=other_headers).json()["conversations"] == []


def test_user_hide_keeps_conversation_for_admin(client, make_user, admin):
    _, user_headers = make_user()
    _, admin_headers = admin
    conv_id = start(client, user_headers)

    r = client.request("DELETE", f"/api/chat/conversations/{conv_id}", headers=user_headers)
    assert r.json()["deleteType"] == "user_hide"

    assert client.get(f"/api/chat/conversations/{conv_id}", headers=user_headers).status_code == 404
    assert client.get(f"/api/chat/conversations/{conv_id}", headers=admin_headers).status_code == 200


def test_admin_archive_and_permanent_delete(client, make_user, admin):
    _, user_headers = make_user()
    _, admin_headers = admin
    conv_id = start(client, user_headers)

    archived = client.request("DELETE", f"/api/chat/conversations/{conv_id}", headers=admin_headers)
    assert archived.json()["deleteType"] == "admin_archive"
    assert client.get("/api/chat/conversations", headers=admin_headers).json()["conversations"] == []
    in_archive = client.get("/api/chat/conversations?archived=true", headers=admin_headers).json()["conversations"]
    assert [c["id"] for c in in_archive] == [conv_id]

    gone = client.request("DELETE", f"/api/chat/conversations/{conv_id}",
                          json={"deleteType": "permanent"}, headers=admin_headers)
    assert gone.json()["deleteType"] == "permanent"
    assert client.get(f"/api/chat/conversations/{conv_id}", headers=admin_headers).status_code == 404


def test_only_admin_can_change_status(client, make_user, admin):
    _, user_headers = make_user()
    _, admin_headers = admin
    conv_id = start(client, user_headers)

    assert client.patch(f"/api/chat/conversations/{conv_id}", json={"status": "closed"},
                        headers=user_headers).status_code == 403
    r = client.patch(f"/api/chat/conversations/{conv_id}", json={"status": "closed", "priority": "high"},
                     headers=admin_headers)
    assert r.status_code == 200
    assert r.json()["conversation"]["status"] == "closed"
    assert r.json()["conversation"]["priority"] == "high"


def test_empty_message_is_rejected(client, make_user):
    _, headers = make_user()
    r = client.post("/api/chat/conversations", json={"subject": "Hi", "message": "   "}, headers=headers)
    assert r.status_code == 400
