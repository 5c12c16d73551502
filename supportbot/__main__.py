"""
Entry point for running supportbot as a module: python -m supportbot
"""

from supportbot.cli.commands import app

if __name__ == "__main__":
    app()
