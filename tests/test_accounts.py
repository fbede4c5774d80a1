from decimal import Decimal

import pytest

from marketplace import config, crud
from marketplace.db import AsyncSessionLocal
from marketplace.errors import IdentityAlreadyExists, StaleIdentityPersists, ProfileCreateFailed
from marketplace.models import ChatConversation, ChatMessage, Order, OrderItem
from marketplace.services import accounts

from conftest import in_session, run


def new_user_body(email="new.buyer@example.com"):
    return {
        "name": "New Buyer",
        "email": email,
        "accountType": "business",
        "creditLimit": 500,
        "company": "Acme",
        "phone": "555-0100",
        "address": {"street": "1 Main St", "city": "Springfield", "state": "IL", "zipCode": "62701"},
    }


def place_order(user_id, status="pending", total="25.00"):
    async def _place(db):
        order = await crud.insert_order(db, {
            "order_number": f"ORD-{user_id[:6]}-{status}",
            "user_id": user_id,
            "total_amount": Decimal(total),
            "status": status,
        })
        await crud.insert_order_items(db, [{
            "order_id": order.id, "product_id": 1, "quantity": 1,
            "unit_price": Decimal(total), "total_price": Decimal(total),
        }])
        return order.id
    return in_session(_place)


def open_conversation(user_id):
    async def _open(db):
        conv = await crud.insert_conversation(db, {"user_id": user_id, "subject": "Help", "priority": "medium"})
        await crud.insert_message(db, {"conversation_id": conv.id, "sender_id": user_id, "message": "hi"})
        return conv.id
    return in_session(_open)


def counts():
    async def _counts(db):
        return {
            "orders": await crud.count_rows(db, Order),
            "items": await crud.count_rows(db, OrderItem),
            "conversations": await crud.count_rows(db, ChatConversation),
            "messages": await crud.count_rows(db, ChatMessage),
        }
    return in_session(_counts)


# ---------- provisioning ----------
def test_admin_creates_user_with_temporary_password(client, admin, identity):
    _, headers = admin

    r = client.post("/api/admin/users", json=new_user_body(), headers=headers)

    assert r.status_code == 200, r.text
    body = r.json()
    assert body["success"] is True
    assert len(body["password"]) == 16
    user = body["user"]
    assert user["email"] == "new.buyer@example.com"
    assert user["temporaryPassword"] is True
    assert user["creditLimit"] == 500.0
    assert user["company"] == "Acme"
    assert user["address"]["zipCode"] == "62701"

    # the returned password actually signs in
    login = client.post("/api/auth/login", json={"email": "new.buyer@example.com", "password": body["password"]})
    assert login.status_code == 200
    assert login.json()["access_token"]


def test_duplicate_profile_email_is_rejected(client, admin, make_user):
    _, headers = admin
    make_user(email="taken@example.com")

    r = client.post("/api/admin/users", json=new_user_body("Taken@Example.com"), headers=headers)

    assert r.status_code == 400
    assert r.json()["code"] == "email_already_registered"


def test_stale_identity_is_removed_before_create(client, admin, identity):
    _, headers = admin
    stale = run(identity.create("orphan@example.com", "whatever1"))

    r = client.post("/api/admin/users", json=new_user_body("orphan@example.com"), headers=headers)

    assert r.status_code == 200, r.text
    assert r.json()["user"]["id"] != stale.id
    assert run(identity.get(stale.id)) is None


def test_stale_identity_that_never_goes_away(admin, identity, monkeypatch):
    run(identity.create("sticky@example.com", "whatever1"))

    async def ignore_delete(user_id):
        return None
    monkeypatch.setattr(identity, "delete", ignore_delete)

    async def _provision(db):
        return await accounts.provision_user(db, identity, {
            "name": "Sticky", "email": "sticky@example.com", "account_type": "personal",
        })
    with pytest.raises(StaleIdentityPersists):
        in_session(_provision)


def test_profile_failure_removes_new_identity(admin, identity, monkeypatch):
    async def broken_insert(db, data):
        raise ProfileCreateFailed()
    monkeypatch.setattr(accounts, "_insert_profile", broken_insert)

    async def _provision(db):
        return await accounts.provision_user(db, identity, {
            "name": "Ghost", "email": "ghost@example.com", "account_type": "personal",
        })
    with pytest.raises(ProfileCreateFailed):
        in_session(_provision)

    assert run(identity.list_by_email("ghost@example.com")) == []


def test_identity_create_is_retried_while_provider_catches_up(admin, identity, monkeypatch):
    monkeypatch.setattr(config, "IDENTITY_CREATE_RETRIES", 3)
    real_create = identity.create
    calls = []

    async def create_after_one_refusal(email, password, metadata=None):
        calls.append(email)
        if len(calls) == 1:
            raise IdentityAlreadyExists()
        return await real_create(email, password, metadata)
    monkeypatch.setattr(identity, "create", create_after_one_refusal)

    async def _provision(db):
        return await accounts.provision_user(db, identity, {
            "name": "Lagging", "email": "lagging@example.com", "account_type": "personal",
        })
    result = in_session(_provision)

    assert len(calls) == 2
    assert result["user"]["email"] == "lagging@example.com"
    assert len(run(identity.list_by_email("lagging@example.com"))) == 1


def test_leftover_profile_with_same_id_is_replaced(admin, identity, monkeypatch):
    real_create = identity.create
    leftover = {}

    # the provider hands back an id that an orphaned profile still owns
    async def create_over_leftover(email, password, metadata=None):
        created = await real_create(email, password, metadata)
        async with AsyncSessionLocal() as db:
            await crud.insert_profile(db, {
                "id": created.id, "name": "Leftover", "email": "old.owner@example.com",
                "account_type": "personal", "status": "active",
            })
            await crud.insert_order(db, {
                "order_number": "ORD-LEFTOVER-1", "user_id": created.id,
                "total_amount": Decimal("12.00"), "status": "pending",
            })
            await db.commit()
        leftover["id"] = created.id
        return created
    monkeypatch.setattr(identity, "create", create_over_leftover)

    async def _provision(db):
        return await accounts.provision_user(db, identity, {
            "name": "Fresh", "email": "fresh@example.com", "account_type": "personal",
        })
    result = in_session(_provision)

    assert result["user"]["id"] == leftover["id"]
    profile = in_session(lambda db: crud.get_profile(db, leftover["id"]))
    assert profile.name == "Fresh"
    assert profile.email == "fresh@example.com"
    assert in_session(lambda db: crud.get_profiles_by_email(db, "old.owner@example.com")) == []
    assert counts()["orders"] == 0


def test_create_user_requires_known_account_type(client, admin):
    _, headers = admin
    body = new_user_body()
    body["accountType"] = "enterprise"

    r = client.post("/api/admin/users", json=body, headers=headers)

    assert r.status_code == 400
    assert r.json()["code"] == "validation_failed"


def test_non_admin_cannot_create_users(client, make_user):
    _, headers = make_user()
    r = client.post("/api/admin/users", json=new_user_body(), headers=headers)
    assert r.status_code == 403


# ---------- deep clean ----------
def test_deep_clean_unknown_email_is_available(client, admin):
    _, headers = admin

    r = client.post("/api/admin/deep-clean", json={"email": "nobody@example.com"}, headers=headers)

    assert r.status_code == 200
    body = r.json()
    assert body["success"] is True
    assert body["canProceedWithCreation"] is True
    assert body["steps"][-1]["step"] == "Final Status"


def test_deep_clean_without_orders_hard_deletes(client, admin, make_user, identity):
    _, headers = admin
    user_id, _ = make_user(email="leaving@example.com")
    open_conversation(user_id)

    r = client.post("/api/admin/deep-clean", json={"email": "leaving@example.com"}, headers=headers)

    body = r.json()
    assert body["success"] is True
    assert body["canProceedWithCreation"] is True
    steps = [s["step"] for s in body["steps"]]
    assert f"Delete Profile ({user_id})" in steps
    assert f"Delete Auth User ({user_id})" in steps
    assert in_session(lambda db: crud.get_profile(db, user_id)) is None
    assert run(identity.get(user_id)) is None
    assert counts()["conversations"] == 0
    assert counts()["messages"] == 0


def test_deep_clean_with_orders_anonymizes(client, admin, make_user, identity):
    _, headers = admin
    user_id, _ = make_user(email="customer@example.com", name="Customer")
    place_order(user_id)

    r = client.post("/api/admin/deep-clean", json={"email": "customer@example.com"}, headers=headers)

    body = r.json()
    assert body["success"] is True
    assert any(s["step"] == f"Anonymize Profile ({user_id})" for s in body["steps"])
    profile = in_session(lambda db: crud.get_profile(db, user_id))
    assert profile.status == "inactive"
    assert profile.name == "[Deleted User]"
    assert profile.email.endswith("@anonymized.local")
    assert counts()["orders"] == 1
    assert run(identity.get(user_id)) is None


def test_deep_clean_force_removes_orders(client, admin, make_user):
    _, headers = admin
    user_id, _ = make_user(email="forced@example.com")
    order_id = place_order(user_id)

    r = client.post("/api/admin/deep-clean", json={"email": "forced@example.com", "force": True}, headers=headers)

    body = r.json()
    assert body["success"] is True
    assert any(s["step"] == f"Delete Order Items (Order {order_id})" for s in body["steps"])
    assert counts() == {"orders": 0, "items": 0, "conversations": 0, "messages": 0}
    assert in_session(lambda db: crud.get_profile(db, user_id)) is None


def test_deep_clean_lookup_failure(client, admin, identity, monkeypatch):
    _, headers = admin

    async def broken(email):
        raise RuntimeError("provider down")
    monkeypatch.setattr(identity, "list_by_email", broken)

    r = client.post("/api/admin/deep-clean", json={"email": "x@example.com"}, headers=headers)

    assert r.status_code == 400
    body = r.json()
    assert body["code"] == "identity_lookup_failed"
    assert body["canProceedWithCreation"] is False
    assert body["steps"][0]["status"] == "ERROR"


# ---------- admin user management ----------
def test_delete_user_moves_completed_revenue(client, admin, make_user, identity):
    admin_id, headers = admin
    user_id, _ = make_user(email="gone@example.com")
    place_order(user_id, status="delivered", total="40.00")

    r = client.delete(f"/api/admin/users/{user_id}", headers=headers)

    assert r.status_code == 200, r.text
    body = r.json()
    assert body["orderCount"] == 1
    assert body["completedOrdersRevenue"] == 40.0
    assert body["emailFreed"] is True
    adjustments = in_session(crud.list_revenue_adjustments)
    assert len(adjustments) == 1
    assert adjustments[0].created_by == admin_id
    assert counts()["orders"] == 0


def test_admin_cannot_delete_self(client, admin):
    admin_id, headers = admin
    r = client.delete(f"/api/admin/users/{admin_id}", headers=headers)
    assert r.status_code == 400


def test_reset_password_sets_temporary_flag(client, admin, make_user):
    _, headers = admin
    user_id, _ = make_user(email="forgetful@example.com")

    r = client.post(f"/api/admin/users/{user_id}/reset-password", headers=headers)

    assert r.status_code == 200
    password = r.json()["password"]
    login = client.post("/api/auth/login", json={"email": "forgetful@example.com", "password": password})
    assert login.status_code == 200
    assert login.json()["user"]["temporaryPassword"] is True


def test_change_password_clears_temporary_flag(client, make_user):
    user_id, headers = make_user(email="mover@example.com")

    short = client.post("/api/auth/change-password", json={"newPassword": "abc"}, headers=headers)
    assert short.status_code == 400

    r = client.post("/api/auth/change-password",
                    json={"newPassword": "brand-new-pass", "currentPassword": "secret123"}, headers=headers)
    assert r.status_code == 200
    login = client.post("/api/auth/login", json={"email": "mover@example.com", "password": "brand-new-pass"})
    assert login.status_code == 200
    assert login.json()["user"]["temporaryPassword"] is False


def test_update_user_rejects_taken_email(client, admin, make_user):
    _, headers = admin
    make_user(email="first@example.com")
    second_id, _ = make_user(email="second@example.com")

    r = client.put(f"/api/admin/users/{second_id}", json={"email": "first@example.com"}, headers=headers)
    assert r.status_code == 400

    r = client.put(f"/api/admin/users/{second_id}", json={"creditLimit": 250, "status": "suspended"}, headers=headers)
    assert r.status_code == 200
    assert r.json()["user"]["creditLimit"] == 250.0
    assert r.json()["user"]["status"] == "suspended"


def test_check_orders(client, admin, make_user):
    _, headers = admin
    user_id, _ = make_user(email="orders@example.com")
    place_order(user_id)

    r = client.get(f"/api/admin/users/{user_id}/check-orders", headers=headers)

    assert r.json()["hasOrders"] is True
    assert r.json()["orderCount"] == 1


def test_login_rejects_wrong_password(client, make_user):
    make_user(email="careful@example.com")
    r = client.post("/api/auth/login", json={"email": "careful@example.com", "password": "nope"})
    assert r.status_code == 401
    assert r.json()["success"] is False
