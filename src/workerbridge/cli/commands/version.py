"""Version command for workerbridge CLI."""

import sys
from importlib.metadata import version, PackageNotFoundError


def cmd_version() -> int:
    """Display version information.

    Returns:
        Exit code (always 0).
    """
    try:
        wb_version = version("workerbridge")
    except PackageNotFoundError:
        wb_version = "development"

    print(f"workerbridge {wb_version}")
    print(f"Python {sys.version_info.major}.{sys.version_info.minor}.{sys.version_info.micro}")

    print("\nDependencies:")

    deps = [
        ("pydantic", "Config validation"),
        ("pyyaml", "YAML config support"),
    ]

    for pkg, desc in deps:
        try:
            pkg_version = version(pkg)
            status = f"v{pkg_version}"
        except PackageNotFoundError:
            status = "not installed"
        print(f"  {pkg}: {status} ({desc})")

    return 0
