"""Run PodGuard with ``python -m podguard``."""

import sys

from .daemon import main

sys.exit(main())
