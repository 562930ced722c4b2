import pytest

from hospital_queue.config import Settings


def test_defaults_when_environment_is_empty():
    s = Settings.from_env({})
    assert s == Settings()
    assert s.namespace == "hospital/v1"


def test_environment_overrides():
    s = Settings.from_env(
        {
            "HQ_MQTT_HOST": "broker.local",
            "HQ_MQTT_PORT": "8883",
            "HQ_NAMESPACE": "hospital/ward-b/",
            "HQ_DATABASE_URL": "sqlite:///tmp/q.db",
            "HQ_OBSERVER_IDLE_SECONDS": "30",
            "HQ_LOG_LEVEL": "debug",
        }
    )
    assert (s.mqtt_host, s.mqtt_port, s.namespace) == ("broker.local", 8883, "hospital/ward-b")
    assert s.observer_idle_seconds == 30.0
    assert s.log_level == "DEBUG"


@pytest.mark.parametrize(
    "env",
    [
        {"HQ_MQTT_PORT": "abc"},
        {"HQ_MQTT_PORT": "70000"},
        {"HQ_OBSERVER_IDLE_SECONDS": "0"},
        {"HQ_OBSERVER_BACKLOG": "-1"},
        {"HQ_LOG_LEVEL": "LOUD"},
    ],
)
def test_invalid_values_are_rejected(env):
    with pytest.raises(ValueError):
        Settings.from_env(env)
