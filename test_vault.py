"""
SecureEnv - Vault Tests

Run with: pytest test_vault.py
"""

import os
import sqlite3
import tempfile
from contextlib import contextmanager

import pytest

from secureenv.crypto import CryptoEngine
from secureenv.errors import CorruptionError, NotFoundError, ValidationError
from secureenv.keys import KeyManager
from secureenv.storage import StoreHandle
from secureenv.vault import Store, validate_triple

FAST_KDF = {"N": 2**10, "r": 8, "p": 1, "dkLen": 32}


@contextmanager
def open_store(passphrase="correct-horse"):
    """Fresh initialized store in a temp directory."""
    with tempfile.TemporaryDirectory() as tmp:
        with StoreHandle.open(os.path.join(tmp, "store.db"), create=True) as handle:
            km = KeyManager(handle, kdf_params=FAST_KDF)
            with km.initialize(passphrase) as key:
                yield Store(handle, CryptoEngine(key))


def test_correct_horse_scenario():
    """set, set, history, delete, history."""
    with open_store("correct-horse") as store:
        assert store.set("api", "staging", "KEY", "v1").version == 1
        assert store.set("api", "staging", "KEY", "v2").version == 2

        history = store.history("api", "staging", "KEY", include_values=True)
        assert [(h.version, h.current) for h in history] == [(2, True), (1, False)]
        assert [h.value for h in history] == ["v2", "v1"]

        assert store.delete("api", "staging", "KEY") == 2
        with pytest.raises(NotFoundError):
            store.get("api", "staging", "KEY")

        history = store.history("api", "staging", "KEY", include_values=True)
        assert len(history) == 2
        assert [h.version for h in history] == [2, 1]
        assert history[0].deleted, "Newest entry is the deletion marker"
        assert history[0].value == "v2"
        assert not history[1].deleted
        assert not any(h.current for h in history)


def test_set_and_get():
    with open_store() as store:
        secret = store.set("api", "prod", "DATABASE_URL", "postgres://x", "primary db")
        assert secret.version == 1
        assert secret.value is None, "set() does not echo the value"

        got = store.get("api", "prod", "DATABASE_URL")
        assert got.value == "postgres://x"
        assert got.description == "primary db"
        assert got.deleted_at is None


def test_empty_value_allowed():
    with open_store() as store:
        store.set("api", "prod", "EMPTY", "")
        assert store.get("api", "prod", "EMPTY").value == ""


def test_versioning():
    """N sets give version N; every older version stays readable."""
    with open_store() as store:
        for i in range(1, 6):
            assert store.set("p", "e", "K", f"value-{i}").version == i

        assert store.get("p", "e", "K").value == "value-5"
        for i in range(1, 6):
            assert store.get("p", "e", "K", version=i).value == f"value-{i}"

        history = store.history("p", "e", "K")
        assert [h.version for h in history] == [5, 4, 3, 2, 1]
        assert [h.version for h in store.history("p", "e", "K", limit=2)] == [5, 4]
        assert all(h.value is None for h in history)

        with pytest.raises(NotFoundError):
            store.get("p", "e", "K", version=6)
        with pytest.raises(ValidationError):
            store.get("p", "e", "K", version=0)


def test_description_kept_when_not_given():
    with open_store() as store:
        store.set("p", "e", "K", "one", "first description")
        store.set("p", "e", "K", "two")
        assert store.get("p", "e", "K").description == "first description"

        store.set("p", "e", "K", "three", "changed")
        assert store.get("p", "e", "K").description == "changed"


def test_created_at_preserved_on_update():
    with open_store() as store:
        first = store.set("p", "e", "K", "one")
        second = store.set("p", "e", "K", "two")
        assert second.created_at == first.created_at
        assert second.updated_at >= first.updated_at


def test_delete_missing():
    with open_store() as store:
        with pytest.raises(NotFoundError):
            store.delete("p", "e", "NOPE")


def test_versions_not_reused_after_recreate():
    with open_store() as store:
        store.set("p", "e", "K", "one")
        store.set("p", "e", "K", "two")
        store.delete("p", "e", "K")

        assert store.set("p", "e", "K", "three").version == 3
        assert store.get("p", "e", "K", version=1).value == "one"

        deleted = store.get("p", "e", "K", version=2)
        assert deleted.value == "two"
        assert deleted.deleted_at is not None

        history = store.history("p", "e", "K")
        assert [h.version for h in history] == [3, 2, 1]
        assert history[0].current


def test_history_unknown_triple():
    with open_store() as store:
        assert store.history("p", "e", "NOPE") == []


def test_list_projects_environments():
    with open_store() as store:
        store.set("api", "prod", "B", "1")
        store.set("api", "prod", "A", "2")
        store.set("api", "dev", "A", "3")
        store.set("web", "prod", "A", "4")
        store.set("web", "prod", "GONE", "5")
        store.delete("web", "prod", "GONE")

        assert [s.triple for s in store.list()] == [
            ("api", "dev", "A"),
            ("api", "prod", "A"),
            ("api", "prod", "B"),
            ("web", "prod", "A"),
        ]
        assert [s.key for s in store.list("api", "prod")] == ["A", "B"]
        assert [s.triple for s in store.list(environment="prod")][-1] == ("web", "prod", "A")
        assert all(s.value is None for s in store.list())
        assert [s.value for s in store.list("api", "prod", include_values=True)] == ["2", "1"]

        assert store.get_all("api", "prod") == {"A": "2", "B": "1"}
        assert store.get_all("nope", "prod") == {}
        assert store.projects() == ["api", "web"]
        assert store.environments("api") == ["dev", "prod"]
        assert store.environments("nope") == []

        assert store.exists("api", "prod", "A")
        assert not store.exists("web", "prod", "GONE")


def test_triple_validation():
    validate_triple("my-app", "staging", "API_KEY")
    for bad in (
        ("", "e", "K"),
        ("p", "", "K"),
        ("p", "e", ""),
        ("a/b", "e", "K"),
        ("p", "e/x", "K"),
        ("p", "e", "A=B"),
        ("p", "e", "HAS SPACE"),
        ("p", "e", "NUL\x00"),
    ):
        with pytest.raises(ValidationError):
            validate_triple(*bad)

    with open_store() as store:
        with pytest.raises(ValidationError):
            store.set("p", "e", "A=B", "x")
        with pytest.raises(ValidationError):
            store.set("p", "e", "K", None)


def test_ciphertext_moved_to_other_row():
    """Swapping encrypted values between rows is detected (AD binding)."""
    with open_store() as store:
        store.set("p", "e", "A", "alpha")
        store.set("p", "e", "B", "beta")

        # Attacker with raw DB access copies A's ciphertext onto B
        conn = sqlite3.connect(str(store.handle.path))
        conn.execute(
            "UPDATE secrets SET encrypted_value = "
            "(SELECT encrypted_value FROM secrets WHERE key = 'A') WHERE key = 'B'"
        )
        conn.commit()
        conn.close()

        assert store.get("p", "e", "A").value == "alpha"
        with pytest.raises(CorruptionError):
            store.get("p", "e", "B")


def test_failed_set_rolls_back():
    """A failure inside the transaction leaves no partial writes."""
    with open_store() as store:
        store.set("p", "e", "K", "one")

        with pytest.raises(RuntimeError):
            with store.handle.transaction() as conn:
                conn.execute("DELETE FROM secrets")
                raise RuntimeError("boom")

        assert store.get("p", "e", "K").value == "one"
        assert store.history("p", "e", "K")[0].version == 1


def test_storage_survives_reopen():
    with tempfile.TemporaryDirectory() as tmp:
        path = os.path.join(tmp, "store.db")
        with StoreHandle.open(path, create=True) as handle:
            with KeyManager(handle, kdf_params=FAST_KDF).initialize("correct-horse") as key:
                Store(handle, CryptoEngine(key)).set("p", "e", "K", "persisted")

        if os.name == "posix":
            assert oct(os.stat(path).st_mode & 0o777) == "0o600"

        with StoreHandle.open(path) as handle:
            with KeyManager(handle).unlock("correct-horse") as key:
                assert Store(handle, CryptoEngine(key)).get("p", "e", "K").value == "persisted"


def test_no_plaintext_in_database():
    """Values never reach metadata, current or history rows unencrypted."""
    marker = "PLAINTEXT-MARKER-7f3a"
    with open_store() as store:
        store.set("p", "e", "K", marker + "-one", "desc")
        store.set("p", "e", "K", marker + "-two")
        store.set("p", "e", "OTHER", marker)
        store.delete("p", "e", "K")

        conn = sqlite3.connect(str(store.handle.path))
        try:
            for table in ("metadata", "secrets", "secret_history"):
                rows = conn.execute(f"SELECT * FROM {table}").fetchall()
                assert rows, f"{table} should not be empty"
                for row in rows:
                    for cell in row:
                        assert marker not in str(cell), f"Plaintext found in {table}"
        finally:
            conn.close()


def test_history_limit_validation():
    with open_store() as store:
        store.set("p", "e", "K", "one")
        store.set("p", "e", "K", "two")
        for bad in (0, -1, True, "2"):
            with pytest.raises(ValidationError):
                store.history("p", "e", "K", limit=bad)
        assert [h.version for h in store.history("p", "e", "K", limit=1)] == [2]
