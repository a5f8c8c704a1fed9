import json
import os

import pytest

from app.plughost import config
from app.plughost.config import allowed_origins, database_section, load_config, load_server_config
from app.plughost.errors import ConfigurationError


@pytest.fixture(autouse=True)
def _fresh_cache(monkeypatch):
    monkeypatch.setattr(config, "_server_config_cache", {})
    for k in ("DB_MYSQL_HOST", "DB_MYSQL_NAME", "PLUGHOST_PACKAGES_DIR"):
        monkeypatch.delenv(k, raising=False)


def _write(path, data):
    path.write_text(json.dumps(data), encoding="utf-8")
    return path


def test_load_server_config_reads_json(tmp_path):
    p = _write(tmp_path / "server.config.json", {"database": {"adapter": "sqlite", "config": {"database": "x.db"}}})
    cfg = load_server_config(p)
    assert database_section(cfg) == ("sqlite", {"database": "x.db"})


def test_server_config_is_cached_until_file_changes(tmp_path):
    p = _write(tmp_path / "server.config.json", {"database": {"adapter": "sqlite", "config": {}}})
    first = load_server_config(p)
    assert load_server_config(p) is first

    _write(p, {"database": {"adapter": "postgres", "config": {}}})
    st = p.stat()
    os.utime(p, ns=(st.st_atime_ns, st.st_mtime_ns + 1_000_000_000))

    assert database_section(load_server_config(p))[0] == "postgres"


def test_missing_database_section_falls_back_to_mysql_env(tmp_path, monkeypatch):
    monkeypatch.setenv("DB_MYSQL_HOST", "db.internal")
    p = _write(tmp_path / "server.config.json", {"port": 3003})

    adapter, cfg = database_section(load_server_config(p))

    assert adapter == "mysql"
    assert cfg["host"] == "db.internal"
    assert cfg["database"] == "plughost"


def test_missing_file_is_configuration_error(tmp_path):
    with pytest.raises(ConfigurationError):
        load_server_config(tmp_path / "nope.json")


@pytest.mark.parametrize("body", ["{broken", "[1, 2]"])
def test_invalid_file_is_configuration_error(tmp_path, body):
    p = tmp_path / "server.config.json"
    p.write_text(body, encoding="utf-8")
    with pytest.raises(ConfigurationError):
        load_server_config(p)


def test_empty_adapter_is_configuration_error():
    with pytest.raises(ConfigurationError):
        database_section({"database": {"adapter": "  ", "config": {}}})


def test_adapter_name_is_normalized():
    assert database_section({"database": {"adapter": " MySQL "}}) == ("mysql", {})


def test_load_config_reads_env(monkeypatch, tmp_path):
    monkeypatch.setenv("PLUGHOST_PACKAGES_DIR", str(tmp_path / "pk"))
    cfg = load_config()
    assert cfg["PLUGHOST_PACKAGES_DIR"] == str(tmp_path / "pk")
    assert cfg["PLUGHOST_DEPENDENCIES_DIR"].endswith("site_modules")


def test_allowed_origins_default_and_configured():
    assert allowed_origins({}) == ["http://localhost:5173", "http://localhost:3000"]
    assert allowed_origins({"allowedOrigins": ["https://app.example.com/", " "]}) == ["https://app.example.com"]
    assert allowed_origins({"allowedOrigins": "https://one.example.com"}) == ["https://one.example.com"]
    assert allowed_origins({"allowedOrigins": []}) == []


def test_allowed_origins_must_be_a_list():
    with pytest.raises(ConfigurationError):
        allowed_origins({"allowedOrigins": {"origin": "x"}})
