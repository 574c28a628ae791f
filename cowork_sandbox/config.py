import configparser
import os

CONFIG_DIR = os.environ.get(
    "COWORK_SANDBOX_HOME",
    os.path.join(os.getenv("HOME", os.path.expanduser("~")), ".cowork_sandbox"),
)
CONFIG_FILE = os.path.join(CONFIG_DIR, "sandbox.cfg")
BOOTSTRAP_CACHE_FILE = os.path.join(CONFIG_DIR, "bootstrap_status.json")

DEFAULT_SECTION = "sandbox"


def get_value(key: str):
    config = configparser.ConfigParser()
    config.read(CONFIG_FILE)
    val = config.get(DEFAULT_SECTION, key, fallback=None)
    return val


def _get_bool(key: str, default: bool) -> bool:
    val = get_value(key)
    if val is None:
        return default
    return str(val).strip().lower() in ("1", "true", "yes", "on")


def get_sandbox_debug() -> bool:
    """Whether agent and bridge traffic is logged at debug level."""
    return _get_bool("sandbox_debug", False)


def set_sandbox_debug(enabled: bool):
    set_config_value("sandbox_debug", "true" if enabled else "false")


def get_config_keys():
    """
    Returns the list of all config keys currently in sandbox.cfg,
    plus the preset expected keys.
    """
    default_keys = ["sandbox_debug"]

    config = configparser.ConfigParser()
    config.read(CONFIG_FILE)
    keys = set(config[DEFAULT_SECTION].keys()) if DEFAULT_SECTION in config else set()
    keys.update(default_keys)
    return sorted(keys)


def set_config_value(key: str, value: str):
    """
    Sets a config value in the persistent config file.
    """
    os.makedirs(CONFIG_DIR, exist_ok=True)
    config = configparser.ConfigParser()
    config.read(CONFIG_FILE)
    if DEFAULT_SECTION not in config:
        config[DEFAULT_SECTION] = {}
    config[DEFAULT_SECTION][key] = value
    with open(CONFIG_FILE, "w") as f:
        config.write(f)
