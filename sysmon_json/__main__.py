"""Entry point for ``python -m sysmon_json``."""

from .cli import main

if __name__ == "__main__":
    main()
