"""Launcher entry point (python -m keepalive)."""

from keepalive.cli import main

if __name__ == "__main__":
    main()
