#!/usr/bin/env python3
"""
codi-agent - autonomous coding assistant for your terminal.

Runs the CLI from a source checkout without installing the package.
"""

import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent))


def main():
    try:
        from codi_agent.main import main as cli
    except ImportError as e:
        print(f"Error: Failed to import required modules: {e}")
        print("Please make sure you have installed the package with:")
        print("  pip install -e .")
        sys.exit(1)

    try:
        cli()
    except KeyboardInterrupt:
        print("\n\nGoodbye!")
        sys.exit(0)


if __name__ == "__main__":
    main()
