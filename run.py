#!/usr/bin/env python3
"""
run.py: Launch streamer-relay without installing.

Usage (from the project directory):
    python run.py start
    python run.py start --obs-password mypassword --debug
    python run.py init-config
    python run.py check
"""
import sys
from pathlib import Path

# Ensure the project root is on the path
sys.path.insert(0, str(Path(__file__).parent))

from streamer_relay.main import app

if __name__ == "__main__":
    app()
