"""Configuration validation for activity-ledger.

Validates the loaded TOML configuration and warns about potential issues.
"""

import logging
import re
from typing import Any

logger = logging.getLogger(__name__)

# Characters that suggest someone wrote a regular expression where a plain
# substring is expected
REGEX_HINT = re.compile(r"[\^$*+?\[\]\\|()]")


class ConfigValidationError(Exception):
    """Raised when configuration has critical errors."""

    pass


class ConfigValidator:
    """Validates configuration dictionaries."""

    KNOWN_TOP_LEVEL = {
        "reader",
        "data_file",
        "max_context_events",
        "tuning",
        "knowledgec",
        "activitywatch",
        "rules",
    }

    KNOWN_READERS = {"knowledgec", "activitywatch"}

    TUNING_PARAMS = {
        "merge_threshold": {"type": (int, float), "min": 0},
        "idle_gap_threshold": {"type": (int, float), "min": 0},
        "import_throttle_interval": {"type": (int, float), "min": 0},
        "deferred_save_delay": {"type": (int, float), "min": 0},
        "group_gap_threshold": {"type": (int, float), "min": 0},
        "group_min_duration": {"type": (int, float), "min": 0},
    }

    PATTERN_FIELDS = ("app_name_pattern", "bundle_id_pattern", "window_title_pattern")

    RULE_FIELDS = {
        *PATTERN_FIELDS,
        "min_duration",
        "priority",
        "enabled",
        "category",
        "project",
        "tags",
        "private",
    }

    def __init__(self):
        self.errors: list[str] = []
        self.warnings: list[str] = []

    def validate(self, config: dict[str, Any]) -> tuple[list[str], list[str]]:
        """Validate the configuration.

        Args:
            config: The configuration dictionary to validate

        Returns:
            Tuple of (errors, warnings) lists
        """
        self.errors = []
        self.warnings = []

        self._validate_top_level(config)
        self._validate_tuning(config.get("tuning", {}))
        self._validate_sections(config)
        self._validate_rules(config.get("rules", {}))

        return self.errors, self.warnings

    def _validate_top_level(self, config: dict) -> None:
        for key in config:
            if key not in self.KNOWN_TOP_LEVEL:
                self.warnings.append(f"Unknown top-level config key: '{key}'")

        if "reader" in config and config["reader"] not in self.KNOWN_READERS:
            self.errors.append(
                f"'reader' must be one of {sorted(self.KNOWN_READERS)}, got {config['reader']!r}"
            )

        if "data_file" in config and not isinstance(config["data_file"], str):
            self.errors.append("'data_file' must be a string")

        if "max_context_events" in config:
            value = config["max_context_events"]
            if isinstance(value, bool) or not isinstance(value, int):
                self.errors.append("'max_context_events' must be an integer")
            elif value < 0:
                self.errors.append(f"'max_context_events' must be >= 0, got {value}")

    def _validate_tuning(self, tuning: dict) -> None:
        if not isinstance(tuning, dict):
            self.errors.append("'tuning' section must be a dictionary")
            return

        for key, value in tuning.items():
            if key not in self.TUNING_PARAMS:
                self.warnings.append(f"Unknown tuning parameter: '{key}'")
                continue

            spec = self.TUNING_PARAMS[key]

            if isinstance(value, bool) or not isinstance(value, spec["type"]):
                expected = " or ".join(t.__name__ for t in spec["type"])
                self.errors.append(f"tuning.{key} must be {expected}, got {type(value).__name__}")
                continue

            if "min" in spec and value < spec["min"]:
                self.errors.append(f"tuning.{key} must be >= {spec['min']}, got {value}")
            if "max" in spec and value > spec["max"]:
                self.errors.append(f"tuning.{key} must be <= {spec['max']}, got {value}")

    def _validate_sections(self, config: dict) -> None:
        """Validate the per-reader sections."""
        for section, keys in (("knowledgec", {"path"}), ("activitywatch", {"client_name"})):
            if section not in config:
                continue
            values = config[section]
            if not isinstance(values, dict):
                self.errors.append(f"'{section}' section must be a dictionary")
                continue
            for key, value in values.items():
                if key not in keys:
                    self.warnings.append(f"Unknown field in {section}: '{key}'")
                elif not isinstance(value, str):
                    self.errors.append(f"{section}.{key} must be a string")

    def _validate_rules(self, rules: dict) -> None:
        if not isinstance(rules, dict):
            self.errors.append("'rules' section must be a dictionary")
            return

        for rule_name, rule in rules.items():
            self._validate_single_rule(rule_name, rule)

    def _validate_single_rule(self, rule_name: str, rule: dict) -> None:
        prefix = f"rules.{rule_name}"

        if not isinstance(rule, dict):
            self.errors.append(f"{prefix} must be a dictionary")
            return

        for field in rule:
            if field not in self.RULE_FIELDS:
                self.warnings.append(f"Unknown field in {prefix}: '{field}'")

        for field in self.PATTERN_FIELDS:
            if field in rule:
                self._validate_pattern(prefix, field, rule[field])

        if not any(rule.get(field) for field in self.PATTERN_FIELDS):
            self.warnings.append(f"{prefix} has no pattern and will match every session")

        if "priority" in rule and (
            isinstance(rule["priority"], bool) or not isinstance(rule["priority"], int)
        ):
            self.errors.append(f"{prefix}.priority must be an integer")

        if "min_duration" in rule:
            value = rule["min_duration"]
            if isinstance(value, bool) or not isinstance(value, int | float):
                self.errors.append(f"{prefix}.min_duration must be a number of seconds")
            elif value < 0:
                self.errors.append(f"{prefix}.min_duration must be >= 0, got {value}")

        for field in ("enabled", "private"):
            if field in rule and not isinstance(rule[field], bool):
                self.errors.append(f"{prefix}.{field} must be a boolean")

        for field in ("category", "project"):
            if field in rule and not isinstance(rule[field], str):
                self.errors.append(f"{prefix}.{field} must be a string")

        if "tags" in rule:
            tags = rule["tags"]
            if not isinstance(tags, list) or not all(isinstance(t, str) for t in tags):
                self.errors.append(f"{prefix}.tags must be a list of strings")
            elif len(tags) == 0:
                self.warnings.append(f"{prefix}.tags is empty")

        has_action = (
            rule.get("category") or rule.get("project") or rule.get("tags") or rule.get("private")
        )
        if not has_action:
            self.warnings.append(f"{prefix} has no action (category/project/tags/private)")

    def _validate_pattern(self, prefix: str, field: str, pattern: Any) -> None:
        if not isinstance(pattern, str):
            self.errors.append(f"{prefix}.{field} must be a string")
            return

        if REGEX_HINT.search(pattern):
            self.warnings.append(
                f"{prefix}.{field} looks like a regular expression, "
                "but patterns are matched as plain case-insensitive substrings"
            )


def validate_config(config: dict[str, Any]) -> tuple[list[str], list[str]]:
    """Validate configuration and return errors and warnings.

    Args:
        config: The configuration dictionary to validate

    Returns:
        Tuple of (errors, warnings) lists
    """
    validator = ConfigValidator()
    return validator.validate(config)


def log_validation_results(errors: list[str], warnings: list[str]) -> None:
    for warning in warnings:
        logger.warning(f"Config warning: {warning}")
    for error in errors:
        logger.error(f"Config error: {error}")


def validate_and_warn(config: dict[str, Any]) -> bool:
    """Validate configuration and log warnings/errors.

    Returns:
        True if configuration is valid (no errors), False otherwise
    """
    errors, warnings = validate_config(config)
    log_validation_results(errors, warnings)
    return len(errors) == 0


def validate_or_raise(config: dict[str, Any]) -> None:
    """Validate configuration, logging warnings and raising on errors.

    Raises:
        ConfigValidationError: if there is at least one error
    """
    errors, warnings = validate_config(config)
    log_validation_results([], warnings)
    if errors:
        raise ConfigValidationError("; ".join(errors))
