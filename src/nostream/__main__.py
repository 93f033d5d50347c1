"""Allow ``python -m nostream``."""

import sys

from .main import main

sys.exit(main())
