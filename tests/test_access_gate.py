from datetime import timedelta

import pytest

from app.core.errors import Expired, IncorrectPassword, InvalidRequest, NotFound
from app.core.security import create_access_token
from app.services.access_gate import AccessGate, GateState, session_token_valid, transition
from app.services.transfers import TransferService
from app.utils.datetime import utcnow


@pytest.fixture
def gate(db):
    return AccessGate(db)


@pytest.fixture
def transfers(db, store):
    return TransferService(db, store=store)


@pytest.fixture
def protected(transfers, make_user):
    owner = make_user()
    transfer = transfers.create(owner.id, title="Designs", password="secret123", expires_in_days=7)
    transfers.add_file(owner.id, transfer.id, "mock.png", b"\x89PNG....", mime_type="image/png")
    return transfer


class TestTransitions:
    def test_happy_path(self):
        state = transition(GateState.LOCKED, "submit")
        assert state is GateState.VERIFYING
        assert transition(state, "ok") is GateState.UNLOCKED
        assert transition(state, "fail") is GateState.LOCKED

    @pytest.mark.parametrize(
        "state,event",
        [
            (GateState.UNLOCKED, "submit"),
            (GateState.LOCKED, "ok"),
            (GateState.VERIFYING, "open"),
        ],
    )
    def test_invalid(self, state, event):
        with pytest.raises(InvalidRequest):
            transition(state, event)


class TestOpen:
    def test_protected_starts_locked_without_details(self, gate, protected):
        view = gate.open(protected.id)
        assert view.state is GateState.LOCKED
        assert view.requires_password is True
        assert view.files == []
        assert view.title is None

    def test_unprotected_opens_directly(self, gate, transfers, make_user):
        owner = make_user()
        transfer = transfers.create(owner.id, title="Open", password=None, expires_in_days=1)
        view = gate.open(transfer.id)
        assert view.state is GateState.UNLOCKED
        assert view.requires_password is False
        assert view.title == "Open"

    def test_session_token_unlocks(self, gate, protected):
        token = gate.unlock(protected.id, "secret123").access_token
        view = gate.open(protected.id, session_token=token)
        assert view.state is GateState.UNLOCKED
        assert [f["name"] for f in view.files] == ["mock.png"]
        assert view.files[0]["isEncrypted"] is True

    def test_garbage_token_stays_locked(self, gate, protected):
        assert gate.open(protected.id, session_token="not.a.jwt").state is GateState.LOCKED

    def test_unknown_and_expired(self, gate, protected, db):
        with pytest.raises(NotFound):
            gate.open("missing")

        protected.expires_at = utcnow() - timedelta(seconds=1)
        db.commit()
        with pytest.raises(Expired):
            gate.open(protected.id)


class TestUnlock:
    def test_correct_password(self, gate, protected, settings):
        result = gate.unlock(protected.id, "secret123")
        assert result.access_token
        assert result.expires_in == settings.ACCESS_SESSION_MINUTES * 60
        assert result.view.state is GateState.UNLOCKED
        assert result.access_token not in repr(result)

    def test_wrong_password(self, gate, protected):
        with pytest.raises(IncorrectPassword):
            gate.unlock(protected.id, "secret124")

    def test_unknown_transfer_looks_like_wrong_password(self, gate):
        with pytest.raises(IncorrectPassword):
            gate.unlock("does-not-exist", "secret123")

    def test_expired_after_correct_password(self, gate, protected, db):
        protected.expires_at = utcnow() - timedelta(seconds=1)
        db.commit()
        with pytest.raises(Expired):
            gate.unlock(protected.id, "secret123")

    def test_unprotected_transfer_has_no_token(self, gate, transfers, make_user):
        owner = make_user()
        transfer = transfers.create(owner.id, title="", password=None, expires_in_days=1)
        result = gate.unlock(transfer.id, "anything")
        assert result.access_token is None
        assert result.view.state is GateState.UNLOCKED

    def test_password_change_revokes_tokens(self, gate, protected, db):
        token = gate.unlock(protected.id, "secret123").access_token
        assert session_token_valid(token, protected)

        protected.password_hash = gate.codec.hash("new-password")
        db.commit()
        assert not session_token_valid(token, protected)
        assert gate.open(protected.id, session_token=token).state is GateState.LOCKED

    def test_identity_token_is_not_a_session_token(self, protected):
        token = create_access_token(subject=protected.id)
        assert not session_token_valid(token, protected)


class TestGateRoutes:
    def test_verify_password_and_open(self, client, protected):
        r = client.get(f"/transfer/{protected.id}/access")
        assert r.status_code == 200
        assert r.json()["state"] == "locked"
        assert r.json()["requiresPassword"] is True

        r = client.post("/transfer/verify-password", json={"transferId": protected.id, "password": "nope"})
        assert r.status_code == 401
        assert r.json()["requiresPassword"] is True

        r = client.post("/transfer/verify-password", json={"transferId": protected.id, "password": "secret123"})
        assert r.status_code == 200
        body = r.json()
        assert body["valid"] is True
        assert body["expiresIn"] > 0

        r = client.get(f"/transfer/{protected.id}/access", headers={"X-Transfer-Access": body["accessToken"]})
        assert r.json()["state"] == "unlocked"
        assert r.json()["files"][0]["name"] == "mock.png"
        assert r.json()["files"][0]["mimeType"] == "image/png"

    def test_password_attempts_are_throttled(self, client, protected, settings):
        limit, _ = settings.rate_limit("password")
        for _ in range(limit):
            r = client.post("/transfer/verify-password", json={"transferId": protected.id, "password": "nope"})
            assert r.status_code == 401

        r = client.post("/transfer/verify-password", json={"transferId": protected.id, "password": "secret123"})
        assert r.status_code == 429
        assert int(r.headers["Retry-After"]) >= 1
        assert r.json()["error"] == "rate_limited"

    def test_expired_transfer_is_gone(self, client, protected, db):
        protected.expires_at = utcnow() - timedelta(seconds=1)
        db.commit()
        r = client.get(f"/transfer/{protected.id}/access")
        assert r.status_code == 410
        assert r.json()["error"] == "expired"
