"""
CLI interface for agentd using Typer.
"""

# Import shared state (apps, console) first
from ._shared import app, daemon_app  # noqa: F401

# Import submodules to register their commands with the Typer apps
from . import daemon  # noqa: F401
from . import session  # noqa: F401


def main():
    """Main entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
