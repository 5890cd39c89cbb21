"""
Populate, replenish or inspect the activation key pool.

    python scripts/manage_keys.py generate 50000
"""
import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

from keygate.app.cli import main

if __name__ == "__main__":
    sys.exit(main())
