"""Allow ``python -m harvest``."""

from __future__ import annotations

import sys

from harvest.cli import main

sys.exit(main())
