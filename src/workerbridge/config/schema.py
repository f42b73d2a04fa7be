"""Pydantic validation models for workerbridge configuration.

RunnerConfig mirrors the string-keyed configuration map the task engine
hands to a runner. YAML files wrap it in a ConfigSchema together with the
observability settings.
"""

from typing import Dict, List, Any, Mapping, Optional, Literal
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class RunnerConfig(BaseModel):
    """Options recognized by a worker runner.

    Attributes:
        buffer_size: Socket stream buffer size in bytes.
        py_worker_reuse: Return workers to the pool instead of closing them.
        py_executor_memory: Executor memory in MiB, split across cores.
        executor_cores: Number of concurrent tasks per executor.
        python_env: Path or identity of the worker runtime.
        task_kill_timeout: Grace period in ms before the watchdog kills
            the worker of an interrupted task.
    """

    model_config = ConfigDict(extra="allow")

    buffer_size: int = Field(default=65536, gt=0)
    py_worker_reuse: bool = True
    py_executor_memory: Optional[int] = Field(default=None, ge=0)
    executor_cores: int = Field(default=1, ge=1)
    python_env: Optional[str] = None
    task_kill_timeout: int = Field(default=20000, ge=0)

    @property
    def memory_mb(self) -> Optional[int]:
        """Per-worker memory hint, or None when no executor memory is set."""
        if self.py_executor_memory is None:
            return None
        return self.py_executor_memory // self.executor_cores

    @classmethod
    def from_conf(cls, conf: Optional[Mapping[str, Any]] = None) -> "RunnerConfig":
        """Build from a configuration map whose values may be strings."""
        return cls.model_validate(dict(conf or {}))

    def to_conf(self) -> Dict[str, str]:
        """Render as the string map passed on to the worker pool."""
        return {
            key: str(value).lower() if isinstance(value, bool) else str(value)
            for key, value in self.model_dump().items()
            if value is not None
        }


class SinkSchema(BaseModel):
    """Configuration for an observability sink.

    Attributes:
        type: Sink type (file, console, memory, null).
        path: File path for file sinks.
        options: Additional sink-specific options.
    """

    type: Literal["file", "console", "memory", "null"] = "file"
    path: Optional[str] = None
    options: Dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def validate_file_sink_has_path(self) -> "SinkSchema":
        if self.type == "file" and not self.path:
            raise ValueError("File sink requires 'path' to be set")
        return self


class ObservabilitySchema(BaseModel):
    """Configuration for tracing.

    Attributes:
        level: Trace level (off, minimal, normal, verbose).
        sinks: List of sink configurations.
    """

    level: Literal["off", "minimal", "normal", "verbose"] = "off"
    sinks: List[SinkSchema] = Field(default_factory=list)


class ConfigSchema(BaseModel):
    """Root configuration schema.

    Attributes:
        version: Configuration file version (currently "1.0").
        runner: Runner options.
        observability: Trace settings.
    """

    version: str = "1.0"
    runner: RunnerConfig = Field(default_factory=RunnerConfig)
    observability: ObservabilitySchema = Field(default_factory=ObservabilitySchema)

    @field_validator("version")
    @classmethod
    def validate_version(cls, v: str) -> str:
        supported = {"1.0"}
        if v not in supported:
            raise ValueError(
                f"Unsupported config version: {v}. Supported: {supported}"
            )
        return v
