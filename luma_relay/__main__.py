"""Allow ``python -m luma_relay``."""

import sys

from .cli import main

sys.exit(main())
