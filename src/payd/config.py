import os
import tomllib
from pathlib import Path

pkg_root = Path(__file__).parent
config_file = Path(os.getenv("PAYD_CONFIG", pkg_root / "config.toml"))

SECRET_ENV_PREFIX = "PAYD_WEBHOOK_SECRET_"


def load_config(path: Path | str = config_file, environ: dict | None = None) -> dict:
    """Read the TOML config and apply environment overrides."""
    env = os.environ if environ is None else environ
    cfg = tomllib.loads(Path(path).read_text())

    settlement = cfg.setdefault("settlement", {})
    if Path("/.dockerenv").is_file():
        settlement["rpc_url"] = settlement.get("docker_rpc_url", settlement.get("rpc_url"))
    settlement["rpc_url"] = env.get("RPC_URL", settlement.get("rpc_url"))

    store = cfg.setdefault("store", {})
    store["db_path"] = env.get("PAYD_DB_PATH", store.get("db_path", "payd_state.db"))
    store["backend"] = env.get("PAYD_STORE", store.get("backend", "sqlite"))

    providers = cfg.setdefault("webhooks", {}).setdefault("providers", {})
    for name, value in env.items():
        if name.startswith(SECRET_ENV_PREFIX) and value:
            providers[name.removeprefix(SECRET_ENV_PREFIX).lower()] = value

    cfg.setdefault("autosave", {})
    return cfg


cfg = load_config()
