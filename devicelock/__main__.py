"""Allow ``python -m devicelock``."""

from devicelock.main import cli

if __name__ == "__main__":
    cli()
