"""CLI entry point for permitflow.cli module.

Enables execution via: python -m permitflow.cli
"""

from permitflow.cli.run_recovery import main

if __name__ == "__main__":
    raise SystemExit(main())
