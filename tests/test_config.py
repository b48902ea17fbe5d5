import pytest
from pydantic import ValidationError

from config import EngineConfig, load_config
from executor.engine_builder import EngineBuilder


def test_load_config_reads_environment(monkeypatch):
    monkeypatch.setenv("WORKER_COUNT", "8")
    monkeypatch.setenv("MAX_STEPS", "250")
    monkeypatch.setenv("RETRY_BASE_SECONDS", "5")
    monkeypatch.setenv("LOG_LEVEL", "")

    config = load_config()

    assert config.worker_count == 8
    assert config.max_steps == 250
    assert config.retry_base_seconds == 5.0
    assert config.log_level == "INFO"


def test_invalid_values_are_rejected(monkeypatch):
    monkeypatch.setenv("WORKER_COUNT", "0")
    with pytest.raises(ValidationError):
        load_config()


def test_orchestrator_backend_needs_url():
    with pytest.raises(ValueError):
        EngineBuilder.validate_config(EngineConfig(store_backend="orchestrator", orchestrator_url=""))


def test_retry_base_cannot_exceed_max():
    with pytest.raises(ValueError):
        EngineBuilder.validate_config(EngineConfig(retry_base_seconds=600, retry_max_seconds=60))


def test_default_build_uses_memory_backend():
    engine = EngineBuilder.build(EngineConfig())
    assert type(engine.store).__name__ == "InMemoryStore"
    assert engine.workers.worker_count == 4
