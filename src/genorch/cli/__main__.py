"""CLI entry point for genorch.cli module.

Enables execution via: python -m genorch.cli
"""

from genorch.cli.run_training_sweep import main

if __name__ == "__main__":
    raise SystemExit(main())
