import pytest

from notifstream import config
from notifstream.config import (
    AckMode, ConfigError, ConsumerSettings, ThreadingMode, consumer_config, parse_bool, parse_channels, parse_enum,
    producer_config
)


def test_from_env_defaults():
    settings = ConsumerSettings.from_env()

    assert settings.concurrency == 3
    assert settings.max_pool_size == 10
    assert settings.ack_mode is AckMode.MANUAL
    assert settings.threading_mode is ThreadingMode.THREAD_POOL
    assert settings.poll_timeout == 1.0
    assert settings.max_retries == 3
    assert settings.retry_delay == 5.0
    assert settings.auto_offset_reset == "earliest"
    assert settings.dlq_suffix == ".dlq"


def test_from_env_reads_environment_values(monkeypatch):
    monkeypatch.setattr(config, "CONCURRENCY", "5")
    monkeypatch.setattr(config, "ACK_MODE", "MANUAL_IMMEDIATE")
    monkeypatch.setattr(config, "THREADING_MODE", "elastic")
    monkeypatch.setattr(config, "CHANNELS", "Email, slack")
    monkeypatch.setattr(config, "DLQ_ENABLED", "yes")
    monkeypatch.setattr(config, "RETRY_DELAY_S", "0.25")

    settings = ConsumerSettings.from_env(max_retries=0)

    assert settings.concurrency == 5
    assert settings.ack_mode is AckMode.MANUAL_IMMEDIATE
    assert settings.threading_mode is ThreadingMode.ELASTIC
    assert settings.channels == ("email", "slack")
    assert settings.dlq_enabled is True
    assert settings.retry_delay == 0.25
    assert settings.max_retries == 0


def test_unparseable_environment_values_raise_config_error(monkeypatch):
    monkeypatch.setattr(config, "CONCURRENCY", "three")
    with pytest.raises(ConfigError):
        ConsumerSettings.from_env()


def test_unknown_enum_value_raises_config_error():
    with pytest.raises(ConfigError):
        parse_enum(AckMode, "sometimes")
    assert parse_enum(ThreadingMode, " Thread_Pool ") is ThreadingMode.THREAD_POOL


@pytest.mark.parametrize("overrides", [
    {"concurrency": 0},
    {"max_pool_size": 0},
    {"max_retries": -1},
    {"retry_delay": -0.5},
    {"poll_timeout": 0},
    {"auto_offset_reset": "newest"},
    {"dlq_enabled": True, "dlq_suffix": ""},
])
def test_validate_rejects_out_of_range_values(settings, overrides):
    with pytest.raises(ConfigError):
        settings.with_overrides(**overrides).validate()


def test_parse_helpers():
    assert parse_channels("") == ()
    assert parse_channels(" EMAIL ,, sms ") == ("email", "sms")
    assert parse_bool("on") and parse_bool("1") and parse_bool(True)
    assert not parse_bool("false") and not parse_bool("")


def test_consumer_config_enables_auto_commit_only_in_auto_mode(settings):
    manual = consumer_config(settings, index=2)
    auto = consumer_config(settings.with_overrides(ack_mode="auto"), on_commit=print)

    assert manual["enable.auto.commit"] is False
    assert "auto.commit.interval.ms" not in manual
    assert manual["client.id"] == "notifstream-test-2"
    assert manual["partition.assignment.strategy"] == "cooperative-sticky"
    assert manual["group.id"] == "notifstream.test"
    assert auto["enable.auto.commit"] is True
    assert auto["on_commit"] is print


def test_security_settings_are_applied(monkeypatch, settings):
    monkeypatch.setattr(config, "SASL_MECHANISM", "SCRAM-SHA-512")
    monkeypatch.setattr(config, "SASL_USERNAME", "svc")
    monkeypatch.setattr(config, "SASL_PASSWORD", "secret")
    monkeypatch.setattr(config, "SSL_CA_LOCATION", "/etc/ssl/ca.pem")

    built = consumer_config(settings)

    assert built["security.protocol"] == "SASL_SSL"
    assert built["sasl.mechanisms"] == "SCRAM-SHA-512"
    assert built["ssl.ca.location"] == "/etc/ssl/ca.pem"


def test_producer_config_is_idempotent():
    built = producer_config("broker:9092", "notifstream-publisher")

    assert built["enable.idempotence"] is True
    assert built["acks"] == "all"
    assert built["client.id"] == "notifstream-publisher"
