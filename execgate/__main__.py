"""
Entry point for running execgate as a module: python -m execgate
"""

from execgate.cli.commands import app

if __name__ == "__main__":
    app()
