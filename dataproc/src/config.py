"""
Configuration loading for the daily data processing pipeline.

Resolution order (later wins):
    1. Hardcoded DEFAULT_* values below
    2. YAML file (CONFIG_PATH env var, or the first existing candidate in
       dataproc/config/production.yaml, dataproc/config/local.yaml)
    3. Environment variables (a .env file at the project root is loaded first)

Usage:
    config = load_config()
    config.processing.max_concurrency  # 10
"""

import logging
import os
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from dotenv import load_dotenv

logger = logging.getLogger(__name__)

PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent
CONFIG_CANDIDATES = [
    PROJECT_ROOT / "dataproc" / "config" / "production.yaml",
    PROJECT_ROOT / "dataproc" / "config" / "local.yaml",
]

# Default configuration values
DEFAULT_SCHEDULE = "cron(0 22 * * ? *)"  # 10 PM UTC every day
DEFAULT_OVERLAP_POLICY = "skip"
DEFAULT_INPUT_PREFIX = "incoming/"
DEFAULT_PROCESSED_PREFIX = "processed/"
DEFAULT_RESULTS_PREFIX = "results/"
DEFAULT_FUNCTION_NAME = "PrepareData"
DEFAULT_PREPARE_MAX_ATTEMPTS = 3
DEFAULT_PREPARE_BACKOFF = 1.0
DEFAULT_MAX_CONCURRENCY = 10
DEFAULT_ITEM_MAX_ATTEMPTS = 3
DEFAULT_ITEM_TIMEOUT = 3600
DEFAULT_ITEM_BACKOFF = 2.0
DEFAULT_BACKEND = "ecs"
DEFAULT_CLUSTER = "DataProcessorCluster"
DEFAULT_TASK_DEFINITION = "FargateTaskDefinition"
DEFAULT_CONTAINER_NAME = "data-processor"
DEFAULT_CPU = 256
DEFAULT_MEMORY_MIB = 512
DEFAULT_POLL_INTERVAL = 15
DEFAULT_DATABASE_URL = "sqlite:///dataproc_runs.db"
DEFAULT_REGION = "us-east-1"

OVERLAP_POLICIES = ("skip", "queue")
BACKENDS = ("ecs", "local")


class ConfigError(ValueError):
    """Raised when configuration values are invalid."""

    pass


@dataclass
class ScheduleConfig:
    expression: str = DEFAULT_SCHEDULE
    overlap_policy: str = DEFAULT_OVERLAP_POLICY


@dataclass
class StorageConfig:
    input_bucket: str = ""
    input_prefix: str = DEFAULT_INPUT_PREFIX
    processed_prefix: str = DEFAULT_PROCESSED_PREFIX
    results_prefix: str = DEFAULT_RESULTS_PREFIX


@dataclass
class PreparationConfig:
    function_name: str = DEFAULT_FUNCTION_NAME
    max_attempts: int = DEFAULT_PREPARE_MAX_ATTEMPTS
    backoff_base: float = DEFAULT_PREPARE_BACKOFF


@dataclass
class ProcessingConfig:
    max_concurrency: int = DEFAULT_MAX_CONCURRENCY
    max_attempts: int = DEFAULT_ITEM_MAX_ATTEMPTS
    item_timeout: float = DEFAULT_ITEM_TIMEOUT
    backoff_base: float = DEFAULT_ITEM_BACKOFF


@dataclass
class ExecutionConfig:
    backend: str = DEFAULT_BACKEND
    cluster: str = DEFAULT_CLUSTER
    task_definition: str = DEFAULT_TASK_DEFINITION
    container_name: str = DEFAULT_CONTAINER_NAME
    cpu: int = DEFAULT_CPU
    memory_mib: int = DEFAULT_MEMORY_MIB
    subnets: List[str] = field(default_factory=list)
    security_groups: List[str] = field(default_factory=list)
    assign_public_ip: bool = False
    poll_interval: float = DEFAULT_POLL_INTERVAL


@dataclass
class DatabaseConfig:
    url: str = DEFAULT_DATABASE_URL


@dataclass
class NotificationConfig:
    sns_topic_arn: Optional[str] = None


@dataclass
class PipelineConfig:
    """
    Complete pipeline configuration.

    Attributes:
        schedule: Daily trigger expression and overlap policy
        storage: Incoming bucket and prefixes
        preparation: Preparation function name and retry policy
        processing: Fan-out concurrency, per-item retry policy and timeout
        execution: Execution backend and ECS task settings
        database: Run store connection URL
        notifications: Optional SNS topic for completion notices
        region: AWS region for all clients
    """

    schedule: ScheduleConfig = field(default_factory=ScheduleConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    preparation: PreparationConfig = field(default_factory=PreparationConfig)
    processing: ProcessingConfig = field(default_factory=ProcessingConfig)
    execution: ExecutionConfig = field(default_factory=ExecutionConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    notifications: NotificationConfig = field(default_factory=NotificationConfig)
    region: str = DEFAULT_REGION

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]] = None) -> "PipelineConfig":
        """
        Build a config from a (possibly partial) nested dict.

        Unknown keys are rejected so typos in YAML files surface early.
        """
        data = data or {}
        sections = {
            "schedule": ScheduleConfig,
            "storage": StorageConfig,
            "preparation": PreparationConfig,
            "processing": ProcessingConfig,
            "execution": ExecutionConfig,
            "database": DatabaseConfig,
            "notifications": NotificationConfig,
        }

        unknown = set(data) - set(sections) - {"region"}
        if unknown:
            raise ConfigError(f"Unknown config sections: {sorted(unknown)}")

        kwargs: Dict[str, Any] = {}
        for name, section_cls in sections.items():
            values = data.get(name) or {}
            try:
                kwargs[name] = section_cls(**values)
            except TypeError as e:
                raise ConfigError(f"Invalid keys in config section '{name}': {e}")
        if data.get("region"):
            kwargs["region"] = data["region"]

        config = cls(**kwargs)
        config.validate()
        return config

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def validate(self) -> None:
        """
        Check value ranges.

        Raises:
            ConfigError: On the first invalid value
        """
        if self.schedule.overlap_policy not in OVERLAP_POLICIES:
            raise ConfigError(
                f"schedule.overlap_policy must be one of {OVERLAP_POLICIES}, "
                f"got {self.schedule.overlap_policy!r}"
            )
        if self.execution.backend not in BACKENDS:
            raise ConfigError(
                f"execution.backend must be one of {BACKENDS}, "
                f"got {self.execution.backend!r}"
            )
        if self.processing.max_concurrency < 1:
            raise ConfigError("processing.max_concurrency must be >= 1")
        if self.processing.max_attempts < 1:
            raise ConfigError("processing.max_attempts must be >= 1")
        if self.processing.item_timeout <= 0:
            raise ConfigError("processing.item_timeout must be > 0")
        if self.preparation.max_attempts < 1:
            raise ConfigError("preparation.max_attempts must be >= 1")
        if self.processing.backoff_base < 0 or self.preparation.backoff_base < 0:
            raise ConfigError("backoff_base must be >= 0")
        if self.execution.cpu <= 0 or self.execution.memory_mib <= 0:
            raise ConfigError("execution.cpu and execution.memory_mib must be > 0")


def _apply_env_overrides(data: Dict[str, Any]) -> Dict[str, Any]:
    """Overlay environment variables onto the raw config dict."""
    overrides = {
        # env var: (section, key, converter)
        "INPUT_BUCKET": ("storage", "input_bucket", str),
        "input_bucket": ("storage", "input_bucket", str),
        "SCHEDULE_EXPRESSION": ("schedule", "expression", str),
        "OVERLAP_POLICY": ("schedule", "overlap_policy", str),
        "PREPARE_FUNCTION_NAME": ("preparation", "function_name", str),
        "MAX_CONCURRENCY": ("processing", "max_concurrency", int),
        "ITEM_MAX_ATTEMPTS": ("processing", "max_attempts", int),
        "ITEM_TIMEOUT": ("processing", "item_timeout", float),
        "EXECUTION_BACKEND": ("execution", "backend", str),
        "ECS_CLUSTER": ("execution", "cluster", str),
        "TASK_DEFINITION": ("execution", "task_definition", str),
        "DATABASE_URL": ("database", "url", str),
        "SNS_TOPIC_ARN": ("notifications", "sns_topic_arn", str),
    }

    for env_var, (section, key, convert) in overrides.items():
        value = os.environ.get(env_var)
        if not value:
            continue
        try:
            data.setdefault(section, {})[key] = convert(value)
        except ValueError:
            raise ConfigError(f"Invalid value for {env_var}: {value!r}")

    region = os.environ.get("AWS_REGION") or os.environ.get("AWS_DEFAULT_REGION")
    if region and "region" not in data:
        data["region"] = region

    return data


def find_config_path(path: Optional[str] = None) -> Optional[Path]:
    """Resolve the config file: explicit path > CONFIG_PATH > candidates."""
    explicit = path or os.environ.get("CONFIG_PATH")
    if explicit:
        explicit_path = Path(explicit)
        if not explicit_path.exists():
            raise ConfigError(f"Config file not found: {explicit_path}")
        return explicit_path

    for candidate in CONFIG_CANDIDATES:
        if candidate.exists():
            return candidate
    return None


def load_config(path: Optional[str] = None, load_env_file: bool = True) -> PipelineConfig:
    """
    Load pipeline configuration.

    Args:
        path: Optional explicit YAML path (overrides CONFIG_PATH)
        load_env_file: Load PROJECT_ROOT/.env before reading env vars

    Returns:
        Validated PipelineConfig

    Raises:
        ConfigError: If the file is missing/invalid or values are out of range
    """
    if load_env_file:
        env_path = PROJECT_ROOT / ".env"
        if env_path.exists():
            load_dotenv(env_path)
            logger.info(f"Loaded environment from: {env_path}")

    data: Dict[str, Any] = {}
    config_path = find_config_path(path)
    if config_path:
        with open(config_path) as f:
            loaded = yaml.safe_load(f) or {}
        if not isinstance(loaded, dict):
            raise ConfigError(f"Config file {config_path} must contain a mapping")
        data = loaded
        logger.info(f"Loaded config from: {config_path}")
    else:
        logger.warning("No config file found, using hardcoded defaults")

    return PipelineConfig.from_dict(_apply_env_overrides(data))
