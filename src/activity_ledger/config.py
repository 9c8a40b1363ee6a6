import os
from pathlib import Path

import toml
from aw_core.config import load_config_toml

default_config = """
# Where activity facts come from: "knowledgec" (macOS knowledgeC.db)
# or "activitywatch" (a running aw-server)
reader = "knowledgec"

# Snapshot file. Empty means ~/.local/share/activity-ledger/local_data.json
data_file = ""

# Keep at most this many context events (oldest are dropped first)
max_context_events = 2000

[tuning]
# Facts of the same app closer than this (seconds) are merged into one session
merge_threshold = 60.0
# Gaps between sessions at least this long (seconds) show up as idle in timelines
idle_gap_threshold = 300.0
# Import requests arriving sooner than this (seconds) after the previous one are ignored
import_throttle_interval = 3.0
# Debounce window (seconds) for background snapshot saves
deferred_save_delay = 2.0
# Grouping suggestions: max gap between sessions and min total length (seconds)
group_gap_threshold = 300.0
group_min_duration = 900.0

[knowledgec]
# Override the knowledgeC.db location (empty means the standard location)
path = ""

[activitywatch]
client_name = "activity-ledger"

## Rules declared here are added to the ledger with the id "config:<name>".
## Categories, projects and tags are referenced by name and created on demand.
#
# [rules.terminal]
# app_name_pattern = "terminal"
# priority = 50
# category = "Development"
# tags = [ "shell" ]
#
# [rules.banking]
# app_name_pattern = "bank"
# priority = 100
# private = true
""".strip()

config = load_config_toml("activity-ledger", default_config)


def load_custom_config(config_path):
    """Load config from a custom file path."""
    global config
    if config_path:
        config_path = Path(config_path)
        if config_path.exists():
            config = toml.load(config_path)
        else:
            raise FileNotFoundError(f"Config file not found: {config_path}")


def get_tuning(cfg: dict, key: str, default: float) -> float:
    """Get a tuning parameter from the environment or config.

    Priority order (highest to lowest):
    1. Environment variable ACTIVITY_LEDGER_<KEY> (temporary override)
    2. cfg['tuning'][key]
    3. default

    Returns:
        The parameter value as float
    """
    env_value = os.environ.get(f"ACTIVITY_LEDGER_{key.upper()}")
    if env_value:
        return float(env_value)
    return float(cfg.get("tuning", {}).get(key, default))


def default_data_file() -> Path:
    """Standard location of the persisted snapshot."""
    return Path.home() / ".local" / "share" / "activity-ledger" / "local_data.json"
