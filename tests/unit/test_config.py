from pathlib import Path

import pytest

from config import BlobStoreConfig, RelayConfig, load_config

SAS = "sv=2021-08-06&sr=c&sp=racw&se=2030-01-01T00%3A00%3A00Z&sig=abc%3D"

_OPTIONAL_VARS = [
    "RELAY_SOURCE_DIR",
    "RELAY_STATE_DIR",
    "RELAY_POLL_INTERVAL",
    "RELAY_CREDENTIAL_LIFETIME",
    "RELAY_SAFETY_MARGIN",
    "RELAY_MAX_BATCH_RECORDS",
    "RELAY_MAX_CHUNKS_PER_CYCLE",
    "RELAY_RUN_ONCE",
    "RELAY_REQUEST_TIMEOUT",
    "RELAY_RATE_LIMIT",
    "RELAY_MAX_ATTEMPT",
    "RELAY_BASE_DELAY",
    "RELAY_BACKOFF_MULTIPLIER",
    "RELAY_MAX_DELAY",
    "RELAY_LOG_LEVEL",
    "OBSERVABILITY_DB_PATH",
]


def _set_required(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("RELAY_ACCOUNT_URL", "https://acct.blob.core.windows.net/")
    monkeypatch.setenv("RELAY_CONTAINER", "event-logs")
    monkeypatch.setenv("RELAY_SAS_TOKEN", "?" + SAS)
    monkeypatch.setenv("RELAY_SOURCES", "App, System,,Security")


def test_blobstore_config_normalizes_url_and_token():
    cfg = BlobStoreConfig(account_url="https://acct.blob.core.windows.net/", container="logs", sas_token="?" + SAS)

    assert cfg.account_url == "https://acct.blob.core.windows.net"
    assert cfg.sas_token == SAS


@pytest.mark.parametrize("container", ["", "ab", "Logs", "bad--name", "-logs", "x" * 64])
def test_blobstore_config_rejects_invalid_container(container: str):
    with pytest.raises(ValueError):
        BlobStoreConfig(account_url="https://acct.blob.core.windows.net", container=container, sas_token=SAS)


@pytest.mark.parametrize("sas_token", ["", "your_sas_token_here", "sv=2021-08-06&se=2030-01-01"])
def test_blobstore_config_sas_token_required(sas_token: str):
    with pytest.raises(ValueError):
        BlobStoreConfig(account_url="https://acct.blob.core.windows.net", container="logs", sas_token=sas_token)


def test_relay_config_rejects_duplicate_sources():
    with pytest.raises(ValueError):
        RelayConfig(sources=["App", "App"])


def test_load_config_reads_required_and_defaults(monkeypatch: pytest.MonkeyPatch):
    _set_required(monkeypatch)
    for name in _OPTIONAL_VARS:
        monkeypatch.delenv(name, raising=False)

    cfg = load_config()
    assert cfg.blobstore.account_url == "https://acct.blob.core.windows.net"
    assert cfg.blobstore.container == "event-logs"
    assert cfg.blobstore.sas_token == SAS
    assert cfg.blobstore.request_timeout == 30.0
    assert cfg.blobstore.rate_limit == 20
    assert cfg.blobstore.max_attempt == 5

    assert cfg.relay.sources == ["App", "System", "Security"]
    assert cfg.relay.source_dir == Path("logs")
    assert cfg.relay.state_dir == Path("state")
    assert cfg.relay.poll_interval == 60.0
    assert cfg.relay.credential_lifetime_minutes == 60
    assert cfg.relay.safety_margin_minutes == 5
    assert cfg.relay.max_batch_records == 1000
    assert cfg.relay.run_once is False
    assert cfg.relay.log_level == "INFO"
    assert cfg.observability_db_path is None


def test_load_config_parses_optional_fields(monkeypatch: pytest.MonkeyPatch, tmp_path: Path):
    _set_required(monkeypatch)
    monkeypatch.setenv("RELAY_STATE_DIR", str(tmp_path / "state"))
    monkeypatch.setenv("RELAY_POLL_INTERVAL", "2.5")
    monkeypatch.setenv("RELAY_CREDENTIAL_LIFETIME", "30")
    monkeypatch.setenv("RELAY_SAFETY_MARGIN", "2")
    monkeypatch.setenv("RELAY_MAX_BATCH_RECORDS", "50")
    monkeypatch.setenv("RELAY_RUN_ONCE", "yes")
    monkeypatch.setenv("RELAY_MAX_DELAY", "12.5")
    monkeypatch.setenv("RELAY_LOG_LEVEL", "debug")
    monkeypatch.setenv("OBSERVABILITY_DB_PATH", str(tmp_path / "obs.duckdb"))

    cfg = load_config()
    assert cfg.relay.state_dir == tmp_path / "state"
    assert cfg.relay.poll_interval == 2.5
    assert cfg.relay.credential_lifetime_minutes == 30
    assert cfg.relay.safety_margin_minutes == 2
    assert cfg.relay.max_batch_records == 50
    assert cfg.relay.run_once is True
    assert cfg.blobstore.max_delay == 12.5
    assert cfg.relay.log_level == "DEBUG"
    assert cfg.observability_db_path == tmp_path / "obs.duckdb"


def test_load_config_rejects_bad_numbers(monkeypatch: pytest.MonkeyPatch):
    _set_required(monkeypatch)
    monkeypatch.setenv("RELAY_POLL_INTERVAL", "soon")

    with pytest.raises(ValueError, match="RELAY_POLL_INTERVAL"):
        load_config()


def test_load_config_requires_sources(monkeypatch: pytest.MonkeyPatch):
    _set_required(monkeypatch)
    monkeypatch.setenv("RELAY_SOURCES", "")

    with pytest.raises(ValueError, match="RELAY_SOURCES"):
        load_config()
