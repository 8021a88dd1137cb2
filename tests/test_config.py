import logging

from payd.config import config_file, load_config
from payd.logging_config import build_logging_config, setup_logging


def test_defaults_from_packaged_toml():
    cfg = load_config(config_file, environ={})
    assert cfg["settlement"]["submit_timeout"] > 0
    assert cfg["autosave"]["key"] == "payroll-scheduler-draft"
    assert "xrpl" in cfg["webhooks"]["providers"]


def test_environment_overrides():
    env = {
        "RPC_URL": "http://node:5005",
        "PAYD_DB_PATH": "/data/payd.db",
        "PAYD_WEBHOOK_SECRET_ANCHOR": "abc123",
    }
    cfg = load_config(config_file, environ=env)
    assert cfg["settlement"]["rpc_url"] == "http://node:5005"
    assert cfg["store"]["db_path"] == "/data/payd.db"
    assert cfg["webhooks"]["providers"]["anchor"] == "abc123"


def test_logging_config_without_file():
    conf = build_logging_config("DEBUG", None)
    assert list(conf["handlers"]) == ["console"]
    assert conf["loggers"]["payd"]["level"] == "DEBUG"
    assert conf["loggers"]["xrpl"]["level"] == "WARNING"

    setup_logging("DEBUG", None)
    assert logging.getLogger("payd").level == logging.DEBUG
