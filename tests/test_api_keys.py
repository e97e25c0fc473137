import json
from datetime import timedelta

import pytest

from app.core.errors import Forbidden, ForbiddenPlan, InvalidCredential, InvalidRequest, NotFound
from app.models.credential import ApiKey
from app.services.credentials import ApiKeyManager, ApiKeyParams
from app.services.transfers import TransferService
from app.utils.datetime import utcnow


@pytest.fixture
def manager(db):
    return ApiKeyManager(db)


@pytest.fixture
def pro_user(make_user):
    return make_user(plan="pro")


class TestApiKeyLifecycle:
    def test_create_reveals_plaintext_once(self, manager, pro_user, db):
        result = manager.create(pro_user, ApiKeyParams(name="CI"))
        plaintext = result.plaintext.reveal()

        record = db.get(ApiKey, result.record.id)
        assert plaintext.startswith("fly_")
        assert record.key_prefix == plaintext[:12]
        assert record.key_hash != plaintext
        assert plaintext not in record.key_hash
        assert record.permissions == ["read", "write"]
        assert record.is_active is True
        assert plaintext not in repr(result)

    def test_plan_gate(self, manager, make_user):
        for plan in ("free", "starter"):
            with pytest.raises(ForbiddenPlan):
                manager.create(make_user(plan=plan), ApiKeyParams(name="x"))
        business = make_user(plan="business")
        assert manager.create(business, ApiKeyParams(name="x")).record.id

    def test_quota(self, manager, pro_user, settings):
        for i in range(settings.MAX_API_KEYS):
            manager.create(pro_user, ApiKeyParams(name=f"k{i}"))
        with pytest.raises(InvalidRequest):
            manager.create(pro_user, ApiKeyParams(name="one too many"))

    def test_revoked_keys_free_quota(self, manager, pro_user, settings):
        ids = [manager.create(pro_user, ApiKeyParams(name=f"k{i}")).record.id for i in range(settings.MAX_API_KEYS)]
        manager.revoke(pro_user, ids[0])
        assert manager.create(pro_user, ApiKeyParams(name="replacement")).record.id

    def test_invalid_permissions(self, manager, pro_user):
        with pytest.raises(InvalidRequest):
            manager.create(pro_user, ApiKeyParams(name="x", permissions=("read", "admin")))

    def test_list_and_get_are_owner_scoped(self, manager, pro_user, make_user):
        other = make_user(plan="pro")
        mine = manager.create(pro_user, ApiKeyParams(name="mine")).record
        manager.create(other, ApiKeyParams(name="theirs"))

        assert [k.id for k in manager.list(pro_user)] == [mine.id]
        with pytest.raises(NotFound):
            manager.get(other, mine.id)

    def test_revoke_is_terminal(self, manager, pro_user):
        result = manager.create(pro_user, ApiKeyParams(name="temp"))
        manager.revoke(pro_user, result.record.id)

        assert manager.list(pro_user) == []
        with pytest.raises(NotFound):
            manager.toggle_active(pro_user, result.record.id)
        with pytest.raises(InvalidCredential):
            manager.authenticate(result.plaintext.reveal())


class TestAuthenticate:
    def test_valid_key_counts_usage(self, manager, pro_user):
        result = manager.create(pro_user, ApiKeyParams(name="CI"))

        key = manager.authenticate(result.plaintext.reveal())
        assert key.id == result.record.id
        assert key.usage_count == 1
        assert key.last_used_at is not None

        key = manager.authenticate(result.plaintext.reveal())
        assert key.usage_count == 2

    @pytest.mark.parametrize("presented", ["", "fly_", "fly_notarealkey", "Bearer nonsense", None])
    def test_unknown_keys(self, manager, pro_user, presented):
        manager.create(pro_user, ApiKeyParams(name="CI"))
        with pytest.raises(InvalidCredential):
            manager.authenticate(presented)

    def test_right_prefix_wrong_body(self, manager, pro_user):
        plaintext = manager.create(pro_user, ApiKeyParams(name="CI")).plaintext.reveal()
        with pytest.raises(InvalidCredential):
            manager.authenticate(plaintext[:-2] + ("aa" if not plaintext.endswith("aa") else "bb"))

    def test_disabled_key_rejected_and_not_counted(self, manager, pro_user, db):
        result = manager.create(pro_user, ApiKeyParams(name="CI"))
        manager.toggle_active(pro_user, result.record.id)

        with pytest.raises(InvalidCredential):
            manager.authenticate(result.plaintext.reveal())
        record = db.get(ApiKey, result.record.id)
        db.refresh(record)
        assert record.usage_count == 0

        manager.toggle_active(pro_user, result.record.id)
        assert manager.authenticate(result.plaintext.reveal()).is_active is True

    def test_missing_permission_is_not_counted(self, manager, pro_user, db):
        result = manager.create(pro_user, ApiKeyParams(name="reader", permissions=("read",)))

        with pytest.raises(Forbidden):
            manager.authenticate(result.plaintext.reveal(), permission="delete")
        record = db.get(ApiKey, result.record.id)
        db.refresh(record)
        assert record.usage_count == 0

        assert manager.authenticate(result.plaintext.reveal(), permission="read").usage_count == 1

    def test_expired_key(self, manager, pro_user, db):
        result = manager.create(pro_user, ApiKeyParams(name="CI", expires_in_days=1))
        record = db.get(ApiKey, result.record.id)
        record.expires_at = utcnow() - timedelta(seconds=1)
        db.commit()

        with pytest.raises(InvalidCredential):
            manager.authenticate(result.plaintext.reveal())


class TestApiKeyRoutes:
    def test_create_list_toggle_delete(self, client, pro_user, auth_headers):
        headers = auth_headers(pro_user)

        r = client.post(
            "/keys",
            json={"userId": pro_user.id, "name": "Deploy bot", "permissions": ["read"]},
            headers=headers,
        )
        assert r.status_code == 201
        body = r.json()
        full_key = body["fullKey"]
        key_id = body["apiKey"]["id"]
        assert full_key.startswith("fly_")
        assert body["apiKey"]["keyPrefix"] == full_key[:12]

        r = client.get("/keys", params={"userId": pro_user.id}, headers=headers)
        assert r.status_code == 200
        listed = r.json()["keys"]
        assert [k["id"] for k in listed] == [key_id]
        assert full_key not in r.text
        assert "keyHash" not in listed[0]

        r = client.patch(f"/keys/{key_id}", json={"userId": pro_user.id}, headers=headers)
        assert r.status_code == 200
        assert r.json()["isActive"] is False

        r = client.delete(f"/keys/{key_id}", params={"userId": pro_user.id}, headers=headers)
        assert r.status_code == 200
        r = client.get("/keys", params={"userId": pro_user.id}, headers=headers)
        assert r.json()["keys"] == []

    def test_free_plan_is_forbidden(self, client, make_user, auth_headers):
        user = make_user(plan="free")
        r = client.post("/keys", json={"userId": user.id, "name": "x"}, headers=auth_headers(user))
        assert r.status_code == 403
        assert r.json()["error"] == "forbidden_plan"

    def test_other_users_id_is_forbidden(self, client, pro_user, make_user, auth_headers):
        other = make_user(plan="pro")
        r = client.get("/keys", params={"userId": other.id}, headers=auth_headers(pro_user))
        assert r.status_code == 403

    def test_bad_permission_is_invalid_request(self, client, pro_user, auth_headers):
        r = client.post(
            "/keys",
            json={"userId": pro_user.id, "name": "x", "permissions": ["admin"]},
            headers=auth_headers(pro_user),
        )
        assert r.status_code == 400
        assert r.json()["error"] == "invalid_request"


class TestPublicApi:
    @pytest.fixture
    def owned_transfer(self, db, store, pro_user):
        return TransferService(db, store=store).create(pro_user.id, title="Shared", password=None, expires_in_days=3)

    def _key(self, manager, owner, permissions=("read",)):
        return manager.create(owner, ApiKeyParams(name="api", permissions=permissions)).plaintext.reveal()

    def test_read_with_api_key(self, client, manager, pro_user, owned_transfer):
        key = self._key(manager, pro_user)
        headers = {"Authorization": f"Bearer {key}"}

        r = client.get("/v1/transfers", headers=headers)
        assert r.status_code == 200
        assert [t["id"] for t in r.json()["transfers"]] == [owned_transfer.id]

        r = client.get(f"/v1/transfers/{owned_transfer.id}", headers=headers)
        assert r.status_code == 200
        assert r.json()["title"] == "Shared"
        assert r.json()["isProtected"] is False

    def test_missing_permission(self, client, manager, pro_user, owned_transfer):
        key = self._key(manager, pro_user, permissions=("read",))
        r = client.delete(f"/v1/transfers/{owned_transfer.id}", headers={"Authorization": f"Bearer {key}"})
        assert r.status_code == 403
        assert r.json()["error"] == "forbidden"

    def test_delete_permission(self, client, manager, pro_user, owned_transfer, db):
        key = self._key(manager, pro_user, permissions=("read", "delete"))
        r = client.delete(f"/v1/transfers/{owned_transfer.id}", headers={"Authorization": f"Bearer {key}"})
        assert r.status_code == 200

        r = client.get(f"/v1/transfers/{owned_transfer.id}", headers={"Authorization": f"Bearer {key}"})
        assert r.status_code == 404

    def test_other_owners_transfer_is_not_found(self, client, manager, make_user, owned_transfer):
        stranger = make_user(plan="business")
        key = self._key(manager, stranger)
        r = client.get(f"/v1/transfers/{owned_transfer.id}", headers={"Authorization": f"Bearer {key}"})
        assert r.status_code == 404

    def test_bad_or_missing_key(self, client):
        assert client.get("/v1/transfers").status_code == 401
        r = client.get("/v1/transfers", headers={"Authorization": "Bearer fly_bogus"})
        assert r.status_code == 401
        assert r.json()["error"] == "invalid_credential"

    def test_identity_jwt_is_not_an_api_key(self, client, pro_user, auth_headers):
        assert client.get("/v1/transfers", headers=auth_headers(pro_user)).status_code == 401

    def test_usage_is_recorded(self, client, manager, pro_user, db):
        key = self._key(manager, pro_user)
        client.get("/v1/transfers", headers={"Authorization": f"Bearer {key}"})
        client.get("/v1/transfers", headers={"Authorization": f"Bearer {key}"})

        record = manager.list(pro_user)[0]
        db.refresh(record)
        assert record.usage_count == 2

    def test_forbidden_request_is_not_counted(self, client, manager, pro_user, owned_transfer, db):
        key = self._key(manager, pro_user, permissions=("read",))
        client.delete(f"/v1/transfers/{owned_transfer.id}", headers={"Authorization": f"Bearer {key}"})

        record = manager.list(pro_user)[0]
        db.refresh(record)
        assert record.usage_count == 0


class TestPublicWrite:
    def test_create_with_write_key(self, client, manager, pro_user):
        key = manager.create(pro_user, ApiKeyParams(name="ci", permissions=("write",))).plaintext.reveal()
        r = client.post(
            "/v1/transfers",
            json={"title": "Nightly build", "password": "hunter22", "expiresInDays": 3},
            headers={"Authorization": f"Bearer {key}"},
        )
        assert r.status_code == 201
        body = r.json()
        assert body["title"] == "Nightly build"
        assert body["isProtected"] is True
        assert "password" not in body

        owned = TransferService(manager.db).list_owned(pro_user.id)
        assert [t.id for t in owned] == [body["id"]]

    def test_read_only_key_cannot_create(self, client, manager, pro_user):
        key = manager.create(pro_user, ApiKeyParams(name="ro", permissions=("read",))).plaintext.reveal()
        r = client.post("/v1/transfers", json={"title": "Nope"}, headers={"Authorization": f"Bearer {key}"})
        assert r.status_code == 403
        assert r.json()["error"] == "forbidden"
        assert TransferService(manager.db).list_owned(pro_user.id) == []

    def test_create_dispatches_transfer_created(self, client, make_user, auth_headers, transport, db):
        owner = make_user(plan="business")
        client.post(
            "/webhooks",
            json={
                "userId": owner.id,
                "name": "ci",
                "url": "https://hooks.example.com/ci",
                "events": ["transfer.created"],
            },
            headers=auth_headers(owner),
        )
        key = ApiKeyManager(db).create(owner, ApiKeyParams(name="ci", permissions=("write",))).plaintext.reveal()

        r = client.post("/v1/transfers", json={"title": "Release"}, headers={"Authorization": f"Bearer {key}"})
        assert r.status_code == 201
        assert [req.headers["X-Webhook-Event"] for req in transport.requests] == ["transfer.created"]
        assert json.loads(transport.requests[0].content)["data"]["transferId"] == r.json()["id"]


class TestPublicUsage:
    def test_usage_totals(self, client, manager, pro_user, db, store):
        service = TransferService(db, store=store)
        first = service.create(pro_user.id, title="a", password=None, expires_in_days=3)
        expired = service.create(pro_user.id, title="b", password=None, expires_in_days=3)
        first.download_count = 3
        expired.download_count = 2
        expired.expires_at = utcnow() - timedelta(seconds=1)
        db.commit()

        key = manager.create(pro_user, ApiKeyParams(name="stats", permissions=("read",))).plaintext.reveal()
        disabled = manager.create(pro_user, ApiKeyParams(name="old"))
        manager.authenticate(disabled.plaintext.reveal())
        manager.toggle_active(pro_user, disabled.record.id)

        r = client.get("/v1/usage", headers={"Authorization": f"Bearer {key}"})
        assert r.status_code == 200
        body = r.json()
        assert body["plan"] == "pro"
        assert body["transfers"] == {"total": 2, "active": 1}
        assert body["downloads"] == {"total": 5}
        # the disabled key's call plus this request
        assert body["api"]["totalCalls"] == 2
        assert body["api"]["activeKeys"] == 1
        assert body["api"]["maxKeys"] == 10

    def test_write_only_key_cannot_read_usage(self, client, manager, pro_user):
        key = manager.create(pro_user, ApiKeyParams(name="w", permissions=("write",))).plaintext.reveal()
        r = client.get("/v1/usage", headers={"Authorization": f"Bearer {key}"})
        assert r.status_code == 403
