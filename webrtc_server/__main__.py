"""
Entry point for running the server package as a module.
Usage: python -m webrtc_server [options]
"""

from .main import main_cli

if __name__ == "__main__":
    main_cli()
