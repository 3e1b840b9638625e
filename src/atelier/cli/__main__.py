"""CLI entry point for atelier.cli module.

Enables execution via: python -m atelier.cli
"""

from atelier.cli.sweep import main

if __name__ == "__main__":
    main()
