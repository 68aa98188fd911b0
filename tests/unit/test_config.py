import pytest
from obstore.store import LocalStore, MemoryStore

from cubestream.config import Config


def test_defaults(monkeypatch):
    for name in ("CUBESTREAM_MAX_REJECTION_RATE", "CUBESTREAM_PARTITION_CHANGE_POLICY", "CUBESTREAM_RETENTION_GAP_POLICY", "CUBESTREAM_OBJECT_STORE_PROVIDER"):
        monkeypatch.delenv(name, raising=False)
    config = Config()
    assert config.MAX_REJECTION_RATE is None
    assert config.PARTITION_CHANGE_POLICY == "strict"
    assert config.RETENTION_GAP_POLICY == "fail"
    assert config.ALLOW_EMPTY_SEGMENTS is False
    assert isinstance(config.store, MemoryStore)
    assert config.async_session_factory is not None


def test_env_overrides(monkeypatch, tmp_path):
    monkeypatch.setenv("CUBESTREAM_MAX_REJECTION_RATE", "0.25")
    monkeypatch.setenv("CUBESTREAM_PARTITION_CHANGE_POLICY", "allow_added")
    monkeypatch.setenv("CUBESTREAM_ALLOW_EMPTY_SEGMENTS", "TRUE")
    monkeypatch.setenv("CUBESTREAM_OBJECT_STORE_PROVIDER", "local")
    monkeypatch.setenv("CUBESTREAM_STAGING_LOCAL_PATH", str(tmp_path))
    config = Config()
    assert config.MAX_REJECTION_RATE == 0.25
    assert config.PARTITION_CHANGE_POLICY == "allow_added"
    assert config.ALLOW_EMPTY_SEGMENTS is True
    assert isinstance(config.store, LocalStore)


@pytest.mark.parametrize(
    "name,value",
    [
        ("CUBESTREAM_PARTITION_CHANGE_POLICY", "anything_goes"),
        ("CUBESTREAM_RETENTION_GAP_POLICY", "ignore"),
        ("CUBESTREAM_MAX_REJECTION_RATE", "1.5"),
        ("CUBESTREAM_MATERIALIZE_CONCURRENCY", "0"),
        ("CUBESTREAM_OBJECT_STORE_PROVIDER", "floppy"),
        ("CUBESTREAM_DATABASE_URL", "mysql://localhost/db"),
    ],
)
def test_invalid_settings(monkeypatch, name, value):
    monkeypatch.setenv(name, value)
    with pytest.raises(ValueError):
        Config()
