import json

import httpx
import pytest

from marketplace.errors import IdentityAlreadyExists, IdentityProviderError, Unauthorized
from marketplace.services.identity import RemoteIdentityProvider

from conftest import run


class FakeAuthServer:
    """Just enough of a GoTrue admin API for the provider."""

    def __init__(self):
        self.users = {}
        self.requests = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if path == "/auth/v1/admin/users" and request.method == "GET":
            page = int(request.url.params.get("page", 1))
            per_page = int(request.url.params.get("per_page", 50))
            users = list(self.users.values())[(page - 1) * per_page: page * per_page]
            return httpx.Response(200, json={"users": users})
        if path == "/auth/v1/admin/users" and request.method == "POST":
            body = json.loads(request.content)
            if any(u["email"] == body["email"] for u in self.users.values()):
                return httpx.Response(422, json={"msg": "A user with this email address has already been registered"})
            user = {"id": f"uid-{len(self.users) + 1}", "email": body["email"], "password": body["password"]}
            self.users[user["id"]] = user
            return httpx.Response(200, json=user)
        if path.startswith("/auth/v1/admin/users/"):
            user_id = path.rsplit("/", 1)[-1]
            if user_id not in self.users:
                return httpx.Response(404, json={"msg": "User not found"})
            if request.method == "DELETE":
                del self.users[user_id]
                return httpx.Response(200, json={})
            if request.method == "PUT":
                self.users[user_id]["password"] = json.loads(request.content)["password"]
            return httpx.Response(200, json=self.users[user_id])
        if path == "/auth/v1/token":
            body = json.loads(request.content)
            for u in self.users.values():
                if u["email"] == body["email"] and u["password"] == body["password"]:
                    return httpx.Response(200, json={"access_token": f"token-{u['id']}"})
            return httpx.Response(400, json={"error_description": "Invalid login credentials"})
        if path == "/auth/v1/user":
            token = request.headers["Authorization"].split(" ", 1)[1]
            user_id = token.replace("token-", "", 1)
            if user_id not in self.users:
                return httpx.Response(401, json={"msg": "invalid JWT"})
            return httpx.Response(200, json=self.users[user_id])
        return httpx.Response(500, json={"msg": "unexpected"})


@pytest.fixture
def server():
    return FakeAuthServer()


@pytest.fixture
def provider(server):
    return RemoteIdentityProvider(
        "https://auth.example.test/", "anon-key", "service-key", transport=httpx.MockTransport(server.handler),
    )


def test_create_list_and_delete(provider, server):
    created = run(provider.create("a@example.com", "pw-123456", {"name": "A"}))

    assert run(provider.list_by_email("A@example.com"))[0].id == created.id
    assert server.requests[0].headers["apikey"] == "service-key"
    assert json.loads(server.requests[0].content)["email_confirm"] is True

    run(provider.delete(created.id))
    assert run(provider.get(created.id)) is None
    # deleting twice is not an error
    run(provider.delete(created.id))


def test_duplicate_email_maps_to_already_exists(provider):
    run(provider.create("dup@example.com", "pw-123456"))
    with pytest.raises(IdentityAlreadyExists):
        run(provider.create("dup@example.com", "pw-123456"))


def test_list_by_email_walks_every_page(provider, server):
    provider.per_page = 2
    for i in range(5):
        run(provider.create(f"user{i}@example.com", "pw-123456"))

    assert [i.email for i in run(provider.list_by_email("user4@example.com"))] == ["user4@example.com"]
    pages = [r.url.params["page"] for r in server.requests if r.method == "GET"]
    assert pages == ["1", "2", "3"]


def test_sign_in_and_verify_token(provider):
    created = run(provider.create("s@example.com", "pw-123456"))

    token = run(provider.sign_in("s@example.com", "pw-123456"))
    assert run(provider.verify_token(token)).id == created.id
    assert run(provider.verify_password(created.id, "pw-123456")) is True
    assert run(provider.verify_password(created.id, "wrong")) is False

    with pytest.raises(Unauthorized):
        run(provider.sign_in("s@example.com", "wrong"))
    with pytest.raises(Unauthorized):
        run(provider.verify_token("token-nobody"))


def test_update_password(provider):
    created = run(provider.create("p@example.com", "old-password"))
    run(provider.update_password(created.id, "new-password"))
    assert run(provider.sign_in("p@example.com", "new-password"))


def test_unexpected_failures_raise_provider_error():
    def broken(request):
        return httpx.Response(503, text="upstream unavailable")

    provider = RemoteIdentityProvider("https://auth.example.test", "anon", "service",
                                      transport=httpx.MockTransport(broken))
    with pytest.raises(IdentityProviderError) as exc:
        run(provider.list_by_email("x@example.com"))
    assert "upstream unavailable" in exc.value.message
