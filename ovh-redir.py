#!/usr/bin/env python3

"""Compatibility wrapper.

The project is packaged under `src/ovh_redirections`. This wrapper allows
running `./ovh-redir.py` straight from a checkout, with `.env.local` next to it.

Note: This file intentionally tweaks sys.path before importing the package.
"""

import sys
from pathlib import Path


sys.path.insert(0, str(Path(__file__).resolve().parent / "src"))

from ovh_redirections.cli import main  # noqa: E402


if __name__ == "__main__":
    main()
