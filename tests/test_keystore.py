"""
Unit tests for key persistence and first-use initialisation
"""

import os
import sys
import json
import time
import base64
import tempfile
import threading

import pytest

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import sms_image_relay as sir


class FailingStore:
    """Secret store whose backing storage is unavailable."""

    path = "<unavailable>"

    def get(self, name):
        raise OSError("storage offline")

    def set(self, name, value):
        raise OSError("storage offline")


class SlowStore:
    """In-memory store that widens the window between read and write."""

    path = "<memory>"

    def __init__(self):
        self.data = {}
        self.set_calls = 0

    def get(self, name):
        time.sleep(0.01)
        return self.data.get(name)

    def set(self, name, value):
        self.set_calls += 1
        time.sleep(0.01)
        self.data[name] = value


class TestSecretStore:
    """Tests for the JSON-file secret store"""

    def test_missing_file_reads_as_empty(self):
        """Test that a fresh installation has no secrets"""
        with tempfile.TemporaryDirectory() as tmpdir:
            store = sir.SecretStore(os.path.join(tmpdir, 'keystore.json'))
            assert store.get('anything') is None

    def test_set_then_get(self):
        """Test storing and reading a secret"""
        with tempfile.TemporaryDirectory() as tmpdir:
            store = sir.SecretStore(os.path.join(tmpdir, 'nested', 'keystore.json'))
            store.set('name', 'value')

            assert store.get('name') == 'value'
            assert not os.path.exists(store.path + '.tmp')

    @pytest.mark.skipif(os.name != 'posix', reason="POSIX permissions only")
    def test_file_is_owner_only(self):
        """Test that the key file is not group/world readable"""
        with tempfile.TemporaryDirectory() as tmpdir:
            store = sir.SecretStore(os.path.join(tmpdir, 'keystore.json'))
            store.set('name', 'value')

            assert os.stat(store.path).st_mode & 0o777 == 0o600

    def test_non_object_file_rejected(self):
        """Test that a JSON file of the wrong shape raises ValueError"""
        with tempfile.TemporaryDirectory() as tmpdir:
            path = os.path.join(tmpdir, 'keystore.json')
            with open(path, 'w') as f:
                json.dump(["not", "a", "dict"], f)

            with pytest.raises(ValueError):
                sir.SecretStore(path).get('name')


class TestKeyStore:
    """Tests for the KeyStore lifecycle"""

    def test_key_is_256_bits(self):
        """Test generated key length"""
        with tempfile.TemporaryDirectory() as tmpdir:
            key_store = sir.KeyStore.open_default(tmpdir)
            assert len(key_store.get_key()) == 32
            assert not key_store.ephemeral

    def test_key_cached_within_process(self):
        """Test that repeated calls return the same key"""
        with tempfile.TemporaryDirectory() as tmpdir:
            key_store = sir.KeyStore.open_default(tmpdir)
            assert key_store.get_key() == key_store.get_key()

    def test_key_survives_restart(self):
        """Test that a new KeyStore over the same storage loads the same key"""
        with tempfile.TemporaryDirectory() as tmpdir:
            first = sir.KeyStore.open_default(tmpdir).get_key()
            second = sir.KeyStore.open_default(tmpdir).get_key()

            assert first == second

    def test_key_persisted_as_base64(self):
        """Test the on-disk representation under the fixed storage name"""
        with tempfile.TemporaryDirectory() as tmpdir:
            key = sir.KeyStore.open_default(tmpdir).get_key()

            with open(os.path.join(tmpdir, sir.KEYSTORE_FILENAME)) as f:
                data = json.load(f)

            assert base64.b64decode(data[sir.KEY_STORAGE_NAME]) == key

    def test_separate_installations_differ(self):
        """Test that two storage locations get independent keys"""
        with tempfile.TemporaryDirectory() as dir1, tempfile.TemporaryDirectory() as dir2:
            assert sir.KeyStore.open_default(dir1).get_key() != \
                sir.KeyStore.open_default(dir2).get_key()

    def test_storage_fault_gives_ephemeral_key(self, capsys):
        """Test that a broken store still yields a usable key"""
        key_store = sir.KeyStore(FailingStore())

        key = key_store.get_key()

        assert len(key) == 32
        assert key_store.ephemeral
        assert key_store.get_key() == key
        assert "ephemeral" in capsys.readouterr().err

    def test_ephemeral_key_lost_on_restart(self):
        """Test the documented hazard: a new process gets a different key"""
        assert sir.KeyStore(FailingStore()).get_key() != sir.KeyStore(FailingStore()).get_key()

    def test_corrupt_stored_key_not_overwritten(self):
        """Test that an undecodable stored key is left alone"""
        with tempfile.TemporaryDirectory() as tmpdir:
            store = sir.SecretStore(os.path.join(tmpdir, 'keystore.json'))
            store.set(sir.KEY_STORAGE_NAME, 'dG9vIHNob3J0')  # "too short"

            key_store = sir.KeyStore(store)
            key = key_store.get_key()

            assert len(key) == 32
            assert key_store.ephemeral
            assert store.get(sir.KEY_STORAGE_NAME) == 'dG9vIHNob3J0'

    def test_concurrent_first_use_creates_one_key(self):
        """Test that racing first callers all see a single key"""
        store = SlowStore()
        key_store = sir.KeyStore(store)
        barrier = threading.Barrier(8)
        keys = []

        def worker():
            barrier.wait()
            keys.append(key_store.get_key())

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len(keys) == 8
        assert len(set(keys)) == 1
        assert store.set_calls == 1

    def test_fingerprint_stable(self):
        """Test fingerprint length and stability across restarts"""
        with tempfile.TemporaryDirectory() as tmpdir:
            fp1 = sir.KeyStore.open_default(tmpdir).fingerprint()
            fp2 = sir.KeyStore.open_default(tmpdir).fingerprint()

            assert fp1 == fp2
            assert len(fp1) == 16
