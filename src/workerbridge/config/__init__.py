"""Configuration system for workerbridge.

Example YAML config:
    version: "1.0"
    runner:
      buffer_size: 8192
      py_worker_reuse: true
      py_executor_memory: 4096
      executor_cores: 4
      python_env: "${WORKER_PYTHON:-/usr/bin/python3}"
      task_kill_timeout: 20000
    observability:
      level: minimal
      sinks:
        - type: file
          path: "${LOG_DIR:-./logs}/sessions.jsonl"

Example usage:
    >>> from workerbridge.config import load_yaml_config
    >>> config = load_yaml_config("runner.yaml")
    >>> config.runner.memory_mb
    1024
"""

from workerbridge.config.schema import (
    ConfigSchema,
    RunnerConfig,
    ObservabilitySchema,
    SinkSchema,
)
from workerbridge.config.loader import (
    load_yaml_config,
    load_yaml_string,
    substitute_env_vars,
    ConfigLoadError,
)

__all__ = [
    # Schema models
    "ConfigSchema",
    "RunnerConfig",
    "ObservabilitySchema",
    "SinkSchema",
    # Loader
    "load_yaml_config",
    "load_yaml_string",
    "substitute_env_vars",
    "ConfigLoadError",
]
