"""
Court Harvester - Main Entry Point

Runs a harvest with the configured phases. Pass --resume to continue
from the last checkpoint.
"""

import sys

from court_harvester.cli import main

if __name__ == "__main__":
    sys.exit(main(["harvest"] + sys.argv[1:]))
