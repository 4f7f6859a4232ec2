"""Allow ``python -m agentd``."""

from .cli import main

if __name__ == "__main__":
    main()
