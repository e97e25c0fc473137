import base64
import io
import zipfile
from datetime import timedelta

import pytest
from cryptography.exceptions import InvalidTag

from app.core.errors import Expired, IncorrectPassword, NotFound, RequiresPassword
from app.crypto.symmetric import aead_decrypt
from app.services.access_gate import AccessGate
from app.services.custodian import TransferEncryptionCustodian, _unique_name
from app.services.transfers import TransferService
from app.utils.datetime import utcnow

PAYLOAD = b"quarterly numbers " * 1000


@pytest.fixture
def transfers(db, store):
    return TransferService(db, store=store)


@pytest.fixture
def custodian(db, store):
    return TransferEncryptionCustodian(db, store=store)


@pytest.fixture
def protected(transfers, make_user):
    """Password-protected transfer holding one encrypted file."""
    owner = make_user()
    transfer = transfers.create(owner.id, title="Q3 report", password="secret123", expires_in_days=7)
    file = transfers.add_file(owner.id, transfer.id, "report.pdf", PAYLOAD, mime_type="application/pdf")
    return transfer, file


class TestUpload:
    def test_encrypted_file_is_stored_as_ciphertext(self, protected, store, db):
        transfer, file = protected

        assert file.is_encrypted is True
        assert file.size == len(PAYLOAD)
        blob = store.get(file.path)
        assert blob != PAYLOAD
        assert len(blob) == len(PAYLOAD) + 16
        # the stored key is wrapped, not the raw 32 bytes
        assert len(file.encryption_key) > 32
        assert len(file.encryption_iv) == 12

    def test_plain_upload(self, transfers, make_user, store):
        owner = make_user()
        transfer = transfers.create(owner.id, title="", password=None, expires_in_days=1)
        file = transfers.add_file(owner.id, transfer.id, "../../etc/notes.txt", b"hello", encrypt=False)

        assert file.is_encrypted is False
        assert file.encryption_key is None
        assert file.original_name == "notes.txt"
        assert store.get(file.path) == b"hello"

    def test_foreign_transfer_upload_is_not_found(self, transfers, protected, make_user):
        transfer, _ = protected
        intruder = make_user()
        with pytest.raises(NotFound):
            transfers.add_file(intruder.id, transfer.id, "x.txt", b"x")


class TestAuthorizeDownload:
    def test_correct_password_returns_key_material(self, custodian, protected, store, db):
        transfer, file = protected

        grant = custodian.authorize_download(transfer.id, file.id, password="secret123")

        assert grant.file_name == "report.pdf"
        assert grant.download_url.startswith("http://testserver/files/raw/")
        key = base64.b64decode(grant.key)
        iv = base64.b64decode(grant.iv)
        assert len(key) == 32
        assert len(iv) == 12
        assert aead_decrypt(key=key, iv=iv, ciphertext=store.get(file.path)) == PAYLOAD
        assert "secret" not in repr(grant).lower()

        db.refresh(file)
        db.refresh(transfer)
        assert file.download_count == 1
        assert transfer.download_count == 1

    def test_same_key_every_time(self, custodian, protected):
        transfer, file = protected
        first = custodian.authorize_download(transfer.id, file.id, password="secret123")
        second = custodian.authorize_download(transfer.id, file.id, password="secret123")
        assert first.key == second.key
        assert first.iv == second.iv

    def test_missing_password(self, custodian, protected):
        transfer, file = protected
        with pytest.raises(RequiresPassword):
            custodian.authorize_download(transfer.id, file.id)

    def test_wrong_password_does_not_count(self, custodian, protected, db):
        transfer, file = protected
        with pytest.raises(IncorrectPassword):
            custodian.authorize_download(transfer.id, file.id, password="wrong")
        db.refresh(file)
        assert file.download_count == 0

    def test_expiry_wins_over_correct_password(self, custodian, protected, db):
        transfer, file = protected
        transfer.expires_at = utcnow() - timedelta(minutes=1)
        db.commit()

        with pytest.raises(Expired):
            custodian.authorize_download(transfer.id, file.id, password="secret123")

    def test_unknown_transfer_and_file(self, custodian, protected):
        transfer, _ = protected
        with pytest.raises(NotFound):
            custodian.authorize_download("nope", "nope", password="secret123")
        with pytest.raises(NotFound):
            custodian.authorize_download(transfer.id, "nope", password="secret123")

    def test_session_token_replaces_password(self, custodian, protected, db):
        transfer, file = protected
        unlock = AccessGate(db).unlock(transfer.id, "secret123")

        grant = custodian.authorize_download(transfer.id, file.id, access_token=unlock.access_token)
        assert grant.key is not None

    def test_session_token_for_other_transfer_is_ignored(self, custodian, protected, transfers, make_user, db):
        transfer, file = protected
        owner = make_user()
        other = transfers.create(owner.id, title="other", password="secret123", expires_in_days=1)
        token = AccessGate(db).unlock(other.id, "secret123").access_token

        with pytest.raises(RequiresPassword):
            custodian.authorize_download(transfer.id, file.id, access_token=token)

    def test_unprotected_needs_no_password(self, custodian, transfers, make_user):
        owner = make_user()
        transfer = transfers.create(owner.id, title="open", password=None, expires_in_days=1)
        file = transfers.add_file(owner.id, transfer.id, "a.txt", b"abc", encrypt=False)

        grant = custodian.authorize_download(transfer.id, file.id)
        assert grant.key is None
        assert "key" not in grant.to_dict()


class TestBundle:
    def test_zip_contains_decrypted_files(self, custodian, transfers, protected, db):
        transfer, _ = protected
        transfers.add_file(transfer.owner_id, transfer.id, "report.pdf", b"second copy")
        transfers.add_file(transfer.owner_id, transfer.id, "plain.txt", b"plain", encrypt=False)

        bundle = custodian.stream_bundle(transfer.id, password="secret123")
        data = b"".join(bundle.chunks)

        assert bundle.file_name == "Q3_report.zip"
        assert bundle.file_count == 3
        with zipfile.ZipFile(io.BytesIO(data)) as zf:
            assert sorted(zf.namelist()) == ["plain.txt", "report (1).pdf", "report.pdf"]
            assert zf.read("report.pdf") == PAYLOAD
            assert zf.read("report (1).pdf") == b"second copy"
            assert zf.read("plain.txt") == b"plain"

        db.refresh(transfer)
        assert transfer.download_count == 1

    def test_missing_object_is_skipped(self, custodian, protected, transfers, store):
        transfer, file = protected
        transfers.add_file(transfer.owner_id, transfer.id, "keep.txt", b"keep")
        store.delete(file.path)

        data = b"".join(custodian.stream_bundle(transfer.id, password="secret123").chunks)
        with zipfile.ZipFile(io.BytesIO(data)) as zf:
            assert zf.namelist() == ["keep.txt"]

    def test_tampered_ciphertext_aborts(self, custodian, protected, store):
        transfer, file = protected
        blob = bytearray(store.get(file.path))
        blob[10] ^= 0x01
        store.put(file.path, bytes(blob))

        bundle = custodian.stream_bundle(transfer.id, password="secret123")
        with pytest.raises(InvalidTag):
            b"".join(bundle.chunks)

    def test_bundle_requires_password(self, custodian, protected):
        transfer, _ = protected
        with pytest.raises(RequiresPassword):
            custodian.stream_bundle(transfer.id)

    def test_empty_transfer(self, custodian, transfers, make_user):
        owner = make_user()
        transfer = transfers.create(owner.id, title="", password=None, expires_in_days=1)
        with pytest.raises(NotFound):
            custodian.stream_bundle(transfer.id)


def test_unique_name():
    seen = set()
    assert _unique_name("a.txt", seen) == "a.txt"
    assert _unique_name("a.txt", seen) == "a (1).txt"
    assert _unique_name("a.txt", seen) == "a (2).txt"
    assert _unique_name("README", seen) == "README"
    assert _unique_name("README", seen) == "README (1)"
