#!/usr/bin/env python3
"""
Run the sequence scheduler outside the API process.

Usage:
    python scripts/run_scheduler.py --once --dry-run   # one simulated tick
    python scripts/run_scheduler.py --interval 300     # loop every 5 minutes
"""

import os
import sys

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from salesflow.agents.scheduler import main

if __name__ == "__main__":
    sys.exit(main())
