import json

from govision.credentials import Credential, CredentialStore


def test_empty_store_returns_none():
    store = CredentialStore()
    assert store.get() is None
    assert store.identity() == ""


def test_save_keeps_identity_when_not_given():
    store = CredentialStore()
    store.save({"access_token": "a1", "refresh_token": "r1"}, identity="me@example.com")
    store.save({"access_token": "a2", "refresh_token": "r2"})

    assert store.get() == Credential("a2", "r2", "me@example.com")


def test_clear_removes_everything():
    store = CredentialStore()
    store.save({"access_token": "a1", "refresh_token": "r1"}, identity="me@example.com")
    store.clear()

    assert store.get() is None
    assert store.identity() == ""


def test_file_backed_store_survives_restart(tmp_path):
    path = tmp_path / "creds" / "credentials.json"
    CredentialStore(path).save({"access_token": "a1", "refresh_token": "r1"}, identity="me@example.com")

    assert json.loads(path.read_text())["identity"] == "me@example.com"
    assert CredentialStore(path).get() == Credential("a1", "r1", "me@example.com")


def test_clear_deletes_file(tmp_path):
    path = tmp_path / "credentials.json"
    store = CredentialStore(path)
    store.save({"access_token": "a1", "refresh_token": "r1"})
    store.clear()

    assert not path.exists()
    assert CredentialStore(path).get() is None


def test_unreadable_file_is_ignored(tmp_path):
    path = tmp_path / "credentials.json"
    path.write_text("{not json")
    assert CredentialStore(path).get() is None

    path.write_text(json.dumps({"access_token": "a1"}))
    assert CredentialStore(path).get() is None
