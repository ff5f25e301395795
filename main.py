#!/usr/bin/env python3
"""
VPN Session - session and connection orchestration core
"""

import sys
import signal
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent))

from vpn_session.cli.interface import main


def signal_handler(signum, frame):
    """Handle termination signals gracefully"""
    print(f"\nReceived signal {signum}, shutting down...")
    sys.exit(0)


if __name__ == "__main__":
    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)
    main()
