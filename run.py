#!/usr/bin/env python3
"""
ClusterDeck control plane server.
"""

from dotenv import load_dotenv

load_dotenv()

from clusterdeck.main import run  # noqa: E402

if __name__ == "__main__":
    run()
