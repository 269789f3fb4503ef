"""
Configuration loader for the court harvester.
Handles environment variables and YAML defaults configuration.
Credentials are loaded from key files (not from YAML).
"""

import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from dotenv import load_dotenv

from court_harvester.errors import ConfigError

# Load environment variables
load_dotenv()


# Russian alphabet used by the prefix search
CYRILLIC_ALPHABET = "АБВГДЕЁЖЗИЙКЛМНОПРСТУФХЦЧШЩЪЫЬЭЮЯ"

COURT_TYPES = [
    "RS", "MS", "AS", "OS", "GV", "OV", "KV",
    "AV", "KJ", "AJ", "AA", "AO", "VS", "AI",
]


@dataclass
class GatewaySettings:
    """Settings for a single credential's request gateway."""
    base_url: str = "https://suggestions.dadata.ru/suggestions/api/4_1/rs"
    endpoint: str = "/suggest/court"
    timeout: float = 10.0
    max_concurrent: int = 5
    requests_per_second: float = 20.0
    reservoir: int = 20
    max_retries: int = 3
    backoff_multiplier: float = 0.5
    backoff_min: float = 0.2
    backoff_max: float = 8.0
    result_cap: int = 20
    quota_statuses: List[int] = field(default_factory=lambda: [403])
    quota_markers: List[str] = field(default_factory=lambda: ["quota", "disabled"])


@dataclass
class RotationSettings:
    """Credential pool settings."""
    keys_dir: str = "keys"
    key_pattern: str = "*.env"
    skip_files: List[str] = field(default_factory=list)
    budget_per_key: int = 9500
    api_key_var: str = "DADATA_API_KEY"
    secret_key_var: str = "DADATA_SECRET_KEY"
    budget_var: str = "DADATA_REQUEST_LIMIT"


@dataclass
class CrawlSettings:
    """Enumeration crawler settings."""
    output_dir: str = "data"
    checkpoint_name: str = "courts_checkpoint.json"
    output_name: str = "courts_full.json"
    phases: List[str] = field(default_factory=lambda: ["prefix", "wide", "gap", "tail"])
    alphabet: str = CYRILLIC_ALPHABET
    max_depth: int = 2
    result_cap: int = 20
    probe_count: int = 1
    batch_delay: float = 0.02
    checkpoint_interval: int = 100
    tail_miss_threshold: int = 20
    tail_span: int = 200
    gap_start: int = 1
    regions: List[str] = field(default_factory=lambda: [f"{n:02d}" for n in range(1, 100)])
    court_types: List[str] = field(default_factory=lambda: list(COURT_TYPES))
    region_width: int = 2
    type_width: int = 2
    ordinal_width: int = 4
    key_field: str = "code"
    duplicate_policy: str = "first_seen"
    progress_log_every: int = 100


KNOWN_PHASES = {"prefix", "wide", "gap", "tail", "verify"}


@dataclass
class HarvesterConfig:
    """Main harvester configuration."""
    gateway: GatewaySettings = field(default_factory=GatewaySettings)
    rotation: RotationSettings = field(default_factory=RotationSettings)
    crawl: CrawlSettings = field(default_factory=CrawlSettings)

    # Logging
    log_level: str = "INFO"
    json_logs: bool = False
    log_file: Optional[str] = None

    @classmethod
    def load(cls, config_path: Optional[str] = None) -> "HarvesterConfig":
        """Load configuration from YAML defaults and environment."""
        if config_path is None:
            config_path = Path(__file__).parent.parent / "config" / "harvester.yaml"
        else:
            config_path = Path(config_path)
            if not config_path.exists():
                raise ConfigError(f"Config file not found: {config_path}")

        config = cls()

        if config_path.exists():
            with open(config_path, "r", encoding="utf-8") as f:
                yaml_config = yaml.safe_load(f) or {}

            if not isinstance(yaml_config, dict):
                raise ConfigError(f"Config root must be a mapping: {config_path}")

            unknown = set(yaml_config) - {"gateway", "rotation", "crawl", "logging"}
            if unknown:
                raise ConfigError(f"Unknown config sections: {sorted(unknown)}")

            _apply_section(config.gateway, yaml_config.get("gateway"), "gateway")
            _apply_section(config.rotation, yaml_config.get("rotation"), "rotation")
            _apply_section(config.crawl, yaml_config.get("crawl"), "crawl")

            logging_section = yaml_config.get("logging") or {}
            config.log_level = logging_section.get("level", config.log_level)
            config.json_logs = bool(logging_section.get("json", config.json_logs))
            config.log_file = logging_section.get("file", config.log_file)

        # Environment overrides
        config.log_level = os.getenv("HARVESTER_LOG_LEVEL", config.log_level)
        config.rotation.keys_dir = os.getenv("HARVESTER_KEYS_DIR", config.rotation.keys_dir)
        config.crawl.output_dir = os.getenv("HARVESTER_OUTPUT_DIR", config.crawl.output_dir)
        config.gateway.base_url = os.getenv("HARVESTER_BASE_URL", config.gateway.base_url)
        budget = os.getenv("HARVESTER_BUDGET_PER_KEY")
        if budget:
            try:
                config.rotation.budget_per_key = int(budget)
            except ValueError as e:
                raise ConfigError(f"HARVESTER_BUDGET_PER_KEY must be an integer: {budget!r}") from e

        config.validate()
        return config

    def validate(self):
        """Reject values the harvester cannot run with."""
        positive = {
            "gateway.max_concurrent": self.gateway.max_concurrent,
            "gateway.requests_per_second": self.gateway.requests_per_second,
            "gateway.reservoir": self.gateway.reservoir,
            "gateway.result_cap": self.gateway.result_cap,
            "rotation.budget_per_key": self.rotation.budget_per_key,
            "crawl.max_depth": self.crawl.max_depth,
            "crawl.result_cap": self.crawl.result_cap,
            "crawl.probe_count": self.crawl.probe_count,
            "crawl.checkpoint_interval": self.crawl.checkpoint_interval,
            "crawl.tail_miss_threshold": self.crawl.tail_miss_threshold,
            "crawl.tail_span": self.crawl.tail_span,
        }
        for name, value in positive.items():
            if value <= 0:
                raise ConfigError(f"{name} must be positive, got {value}")

        if self.gateway.max_retries < 0:
            raise ConfigError("gateway.max_retries must not be negative")
        if not self.crawl.alphabet:
            raise ConfigError("crawl.alphabet must not be empty")
        if self.crawl.gap_start < 0:
            raise ConfigError("crawl.gap_start must not be negative")

        unknown_phases = set(self.crawl.phases) - KNOWN_PHASES
        if unknown_phases:
            raise ConfigError(f"Unknown crawl phases: {sorted(unknown_phases)}")

        if str(self.log_level).upper() not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ConfigError(f"Unknown log level: {self.log_level!r}")

        if self.crawl.duplicate_policy not in ("first_seen", "last_seen"):
            raise ConfigError(
                f"crawl.duplicate_policy must be first_seen or last_seen, got {self.crawl.duplicate_policy!r}"
            )


def _apply_section(target: Any, values: Optional[Dict[str, Any]], section: str):
    """Overlay a YAML section onto a settings dataclass."""
    if not values:
        return
    if not isinstance(values, dict):
        raise ConfigError(f"Config section '{section}' must be a mapping")

    allowed = {f.name for f in fields(target)}
    for key, value in values.items():
        if key not in allowed:
            raise ConfigError(f"Unknown setting '{section}.{key}'")
        setattr(target, key, value)


# Global config instance
_config: Optional[HarvesterConfig] = None


def get_config(config_path: Optional[str] = None) -> HarvesterConfig:
    """Get or create the global config instance."""
    global _config
    if _config is None:
        _config = HarvesterConfig.load(config_path)
    return _config


def reload_config(config_path: Optional[str] = None) -> HarvesterConfig:
    """Force reload the configuration."""
    global _config
    _config = HarvesterConfig.load(config_path)
    return _config
