#!/usr/bin/env python3
"""
Main entry point for the tgs-daemon CLI.

This delegates to the UI layer in tgsdaemon.ui.cli to keep the
console script mapping stable.
"""

from tgsdaemon.ui.cli import run as tgs_daemon


if __name__ == "__main__":
    tgs_daemon()
