"""Entry point for running telecode as a module: python -m telecode"""

from telecode.cli.commands import app

if __name__ == "__main__":
    app()
