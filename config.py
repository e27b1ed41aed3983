import copy
import os

import yaml

DEFAULTS = {
    "key_path": "keys/identity.json",
    "namespace": "cryptochat",
    "medium": "zeroconf",
    "ice_servers": ["stun:stun.l.google.com:19302"],
    "offer_timeout": 60,
    "signal_max_age": 300,
    "log_level": "DEBUG",
}

MEDIUMS = ("zeroconf", "memory")


def load_config(path):
    """
    Read a YAML config file over the defaults. A missing file gives the defaults.
    """
    config = copy.deepcopy(DEFAULTS)
    if path and os.path.exists(path):
        with open(path, "r", encoding="utf-8") as f:
            doc = yaml.safe_load(f)
        if doc is None:
            doc = {}
        if not isinstance(doc, dict):
            raise ValueError(f"{path}: top level must be a mapping")
        config.update(doc)

    if config["medium"] not in MEDIUMS:
        raise ValueError(f"medium must be one of {', '.join(MEDIUMS)}")
    if isinstance(config["ice_servers"], str):
        config["ice_servers"] = [config["ice_servers"]]
    for key in ("offer_timeout", "signal_max_age"):
        value = config[key]
        if value is not None and (isinstance(value, bool) or not isinstance(value, (int, float)) or value < 0):
            raise ValueError(f"{key} must be a non-negative number or null")
    return config
