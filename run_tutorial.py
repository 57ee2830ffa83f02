#!/usr/bin/env python
# run_tutorial.py

import sys
from pathlib import Path

# Add tools directory to Python path
tools_dir = Path(__file__).parent / "tools"
sys.path.append(str(tools_dir))

from mgnify_tools.cli import main

if __name__ == "__main__":
    sys.exit(main())
