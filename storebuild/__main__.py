"""Allow running storebuild with ``python -m storebuild``."""

from storebuild.cli import app

if __name__ == "__main__":
    app()
