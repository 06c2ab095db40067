"""Format script for the tsugi chat client."""

import subprocess
import sys
from pathlib import Path


def _targets() -> list[str]:
    tests = sorted(str(p) for p in Path(".").glob("test_*.py"))
    return ["tsugi_client/", "scripts/", *tests]


def main():
    """Run ruff format, whitespace cleanups and lint fixes."""
    targets = _targets()
    try:
        subprocess.run(["uv", "run", "ruff", "format", *targets], check=True)

        # Whitespace-only fixes need preview + unsafe
        subprocess.run(
            [
                "uv",
                "run",
                "ruff",
                "check",
                "--preview",
                "--fix",
                "--unsafe-fixes",
                "--select",
                "W291,W293,E3",
                *targets,
            ],
            check=True,
        )

        subprocess.run(["uv", "run", "ruff", "check", "--fix", *targets], check=True)

    except subprocess.CalledProcessError:
        sys.exit(1)


if __name__ == "__main__":
    main()
