"""Entry point for ``python -m dkn_launcher``."""

from dkn_launcher.main import run

if __name__ == "__main__":
    run()
