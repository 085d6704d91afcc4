"""
SecureEnv - Bundle Tests

Run with: pytest test_bundle.py
"""

import json
import os
import tempfile
from contextlib import contextmanager

import pytest

from secureenv.bundle import ON_EXISTING_SKIP, BundleCodec
from secureenv.crypto import CryptoEngine
from secureenv.errors import AuthError, CorruptionError, ValidationError
from secureenv.keys import KeyManager
from secureenv.storage import StoreHandle
from secureenv.vault import Store

FAST_KDF = {"N": 2**10, "r": 8, "p": 1, "dkLen": 32}


@contextmanager
def open_store(passphrase="correct-horse"):
    with tempfile.TemporaryDirectory() as tmp:
        with StoreHandle.open(os.path.join(tmp, "store.db"), create=True) as handle:
            with KeyManager(handle, kdf_params=FAST_KDF).initialize(passphrase) as key:
                yield Store(handle, CryptoEngine(key))


def fill(store):
    store.set("api", "prod", "DATABASE_URL", "postgres://prod", "primary")
    store.set("api", "prod", "TOKEN", "t1")
    store.set("api", "prod", "TOKEN", "t2")
    store.set("api", "dev", "TOKEN", "dev-token")
    store.set("web", "prod", "SECRET", "ünïcødé")


def test_bundle_fidelity():
    """Export + import into a fresh store gives identical get() results."""
    codec = BundleCodec(FAST_KDF)
    with open_store() as source, open_store() as target:
        fill(source)
        data = codec.export(source, "correct-horse")

        result = codec.import_bundle(target, data, "correct-horse")
        assert result.applied == 4
        assert result.skipped == 0
        assert not result.partial

        for s in source.list():
            got = target.get(*s.triple)
            assert got.value == source.get(*s.triple).value
            assert got.description == s.description


def test_bundle_format():
    codec = BundleCodec(FAST_KDF)
    with open_store() as store:
        fill(store)
        data = codec.export(store, "correct-horse", project="api", environment="prod")

    assert data.endswith(b"\n")
    doc = json.loads(data)
    assert doc["format"] == "secureenv-bundle"
    assert doc["version"] == 1
    assert doc["kdf"] == "scrypt"
    assert doc["kdf_params"] == FAST_KDF
    assert doc["cipher"] == "chacha20poly1305"
    assert doc["filters"] == {"project": "api", "environment": "prod"}
    assert [e["key"] for e in doc["entries"]] == ["DATABASE_URL", "TOKEN"]
    assert doc["entries"][1]["version"] == 2
    assert b"postgres://prod" not in data, "Values must stay encrypted"
    assert b"correct-horse" not in data


def test_export_filters():
    codec = BundleCodec(FAST_KDF)
    with open_store() as store:
        fill(store)
        assert len(json.loads(codec.export(store, "correct-horse", project="api"))["entries"]) == 3
        assert len(json.loads(codec.export(store, "correct-horse", environment="prod"))["entries"]) == 3
        assert json.loads(codec.export(store, "correct-horse", project="nope"))["entries"] == []


def test_wrong_bundle_passphrase():
    codec = BundleCodec(FAST_KDF)
    with open_store() as source, open_store() as target:
        fill(source)
        data = codec.export(source, "correct-horse")

        with pytest.raises(AuthError):
            codec.import_bundle(target, data, "wrong-horse")
        assert target.list() == [], "Nothing is written on a wrong passphrase"


def test_bundle_passphrase_may_differ_from_store():
    codec = BundleCodec(FAST_KDF)
    with open_store("source-passphrase") as source, open_store("target-passphrase") as target:
        fill(source)
        data = codec.export(source, "bundle-passphrase")

        result = codec.import_bundle(target, data, "bundle-passphrase")
        assert result.applied == 4
        assert target.get("api", "prod", "TOKEN").value == "t2"


def test_import_existing_adds_version():
    codec = BundleCodec(FAST_KDF)
    with open_store() as source, open_store() as target:
        source.set("api", "prod", "TOKEN", "from-bundle")
        target.set("api", "prod", "TOKEN", "local")
        data = codec.export(source, "correct-horse")

        result = codec.import_bundle(target, data, "correct-horse")
        assert result.applied == 1
        secret = target.get("api", "prod", "TOKEN")
        assert secret.version == 2
        assert secret.value == "from-bundle"
        assert target.get("api", "prod", "TOKEN", version=1).value == "local"


def test_import_skip_existing():
    codec = BundleCodec(FAST_KDF)
    with open_store() as source, open_store() as target:
        source.set("api", "prod", "TOKEN", "from-bundle")
        source.set("api", "prod", "NEW", "fresh")
        target.set("api", "prod", "TOKEN", "local")
        data = codec.export(source, "correct-horse")

        result = codec.import_bundle(target, data, "correct-horse", on_existing=ON_EXISTING_SKIP)
        assert result.applied == 1
        assert result.skipped == 1
        token = target.get("api", "prod", "TOKEN")
        assert (token.version, token.value) == (1, "local")
        assert target.get("api", "prod", "NEW").value == "fresh"

        with pytest.raises(ValidationError):
            codec.import_bundle(target, data, "correct-horse", on_existing="overwrite")


def test_malformed_entry_reported():
    """One bad entry is reported; the others still apply."""
    codec = BundleCodec(FAST_KDF)
    with open_store() as source, open_store() as target:
        fill(source)
        doc = json.loads(codec.export(source, "correct-horse"))
        doc["entries"][0]["encrypted_value"] = doc["entries"][1]["encrypted_value"]  # wrong triple
        del doc["entries"][2]["key"]
        doc["entries"].append("not an object")

        result = codec.import_bundle(target, json.dumps(doc), "correct-horse")
        assert result.applied == 2
        assert result.partial
        assert [e.index for e in result.errors] == [0, 2, 4]
        assert isinstance(result.errors[0].error, CorruptionError)
        assert isinstance(result.errors[1].error, ValidationError)
        assert "api/dev/TOKEN" in str(result.errors[0])
        assert "entry #4" in str(result.errors[2])


def test_corrupted_header_aborts():
    codec = BundleCodec(FAST_KDF)
    with open_store() as source, open_store() as target:
        fill(source)
        good = json.loads(codec.export(source, "correct-horse"))

        bad_docs = [
            b"not json at all",
            json.dumps([1, 2, 3]),
            json.dumps(dict(good, format="something-else")),
            json.dumps(dict(good, version=99)),
            json.dumps(dict(good, salt="!!!")),
            json.dumps(dict(good, kdf_params={"N": 3})),
            json.dumps(dict(good, entries="nope")),
            json.dumps({k: v for k, v in good.items() if k != "verification"}),
        ]
        for data in bad_docs:
            with pytest.raises(CorruptionError):
                codec.import_bundle(target, data, "correct-horse")
        assert target.list() == []


def test_load_and_unlock():
    codec = BundleCodec(FAST_KDF)
    with open_store() as store:
        fill(store)
        bundle = codec.load(codec.export(store, "correct-horse", project="web"))

    assert bundle.version == 1
    assert bundle.filters == {"project": "web", "environment": None}
    assert len(bundle.entries) == 1
    with codec.unlock(bundle, "correct-horse") as key:
        assert not key.wiped
    with pytest.raises(AuthError):
        codec.unlock(bundle, "wrong-horse")


def test_export_requires_valid_passphrase():
    codec = BundleCodec(FAST_KDF)
    with open_store() as store:
        with pytest.raises(ValidationError):
            codec.export(store, "short")


def test_hostile_kdf_params_rejected():
    """Oversized scrypt parameters in a bundle header are rejected before any derivation."""
    codec = BundleCodec(FAST_KDF)
    with open_store() as source, open_store() as target:
        fill(source)
        good = json.loads(codec.export(source, "correct-horse"))

        for params in (
            {"N": 2**40, "r": 8, "p": 1, "dkLen": 32},
            {"N": 2**10, "r": 2**40, "p": 1, "dkLen": 32},
            {"N": 2**10, "r": 8, "p": 2**40, "dkLen": 32},
            {"N": 2**20, "r": 32, "p": 16, "dkLen": 32},
        ):
            data = json.dumps(dict(good, kdf_params=params))
            with pytest.raises(CorruptionError):
                codec.load(data)
            with pytest.raises(CorruptionError):
                codec.import_bundle(target, data, "correct-horse")
        assert target.list() == []
