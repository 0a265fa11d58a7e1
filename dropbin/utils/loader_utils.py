import os

import yaml

from dropbin.models.config import DropbinConfig


def load_config_text(config_text: str) -> DropbinConfig:
    # an empty document means "all defaults"
    return DropbinConfig.model_validate(yaml.safe_load(config_text) or {})


def load_config_file(filename: str) -> DropbinConfig:
    if not os.path.exists(filename):
        raise FileNotFoundError(f"Could not find {filename}")

    with open(filename, "r") as f:
        return DropbinConfig.model_validate(yaml.safe_load(f) or {})
