"""Allow ``python -m hashhello``."""

import sys

from .main import main

sys.exit(main())
