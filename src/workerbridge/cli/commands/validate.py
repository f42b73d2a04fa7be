"""Validate command for workerbridge CLI."""

import sys
from pathlib import Path

from workerbridge.config import load_yaml_config, ConfigLoadError


def cmd_validate(config_path: str) -> int:
    """Validate a configuration file.

    Args:
        config_path: Path to the YAML configuration file.

    Returns:
        Exit code (0 for success, 1 for validation errors).
    """
    path = Path(config_path)

    if not path.exists():
        print(f"Error: Configuration file not found: {path}", file=sys.stderr)
        return 1

    print(f"Validating: {path}")

    try:
        config = load_yaml_config(path)
    except ConfigLoadError as e:
        print(f"Validation failed: {e}", file=sys.stderr)
        return 1

    runner = config.runner
    print(f"  Version: {config.version}")
    print("\n  Runner:")
    print(f"    Buffer size: {runner.buffer_size}")
    print(f"    Worker reuse: {'on' if runner.py_worker_reuse else 'off'}")
    if runner.memory_mb is not None:
        print(f"    Memory per worker: {runner.memory_mb} MiB ({runner.executor_cores} cores)")
    if runner.python_env:
        print(f"    Worker executable: {runner.python_env}")
    print(f"    Kill timeout: {runner.task_kill_timeout} ms")

    print(f"\n  Observability: {config.observability.level}")
    for sink in config.observability.sinks:
        sink_info = sink.type
        if sink.path:
            sink_info += f" -> {sink.path}"
        print(f"    - {sink_info}")

    print("\nConfiguration is valid.")
    return 0
