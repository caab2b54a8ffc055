import pytest

from ordersync.core.config import EnvironmentMode, Settings
from ordersync.services.backend import BackendError, get_backend_client, reset_backend_client
from ordersync.services.backend.memory import InMemoryBackendClient
from ordersync.services.notifier import Notifier


def test_development_factory_returns_seeded_memory_backend():
    reset_backend_client()
    backend = get_backend_client()

    assert isinstance(backend, InMemoryBackendClient)
    assert get_backend_client() is backend
    assert len(backend.rows("orders")) == 2
    assert len(backend.rows("support_chats")) == 1
    reset_backend_client()


def test_settings_defaults_and_validation():
    settings = Settings(env_mode="STAGING", database_url="sqlite+aiosqlite:///x.db")

    assert settings.env_mode == EnvironmentMode.STAGING
    assert settings.poll_interval_seconds == 5.0
    assert settings.use_real_services
    assert settings.validate_production_config() == ["DATABASE_URL"]
    with pytest.raises(ValueError):
        Settings(env_mode="qa")


def test_notifier_buffer_drops_oldest():
    notifier = Notifier(buffer_size=2)
    notifier.info("one")
    notifier.error("two")
    notifier.success("three")

    assert notifier.messages() == ["two", "three"]
    assert notifier.messages("error") == ["two"]
    assert [n.level for n in notifier.drain()] == ["error", "success"]
    assert notifier.recent() == []


@pytest.mark.anyio
async def test_memory_backend_failure_injection(backend):
    backend.fail_next("insert")

    with pytest.raises(BackendError, match="Simulated insert failure"):
        await backend.insert("orders", {"customer_name": "Ana"})
    row = await backend.insert("orders", {"customer_name": "Ana"})

    assert backend.rows("orders")[0]["id"] == row["id"]
