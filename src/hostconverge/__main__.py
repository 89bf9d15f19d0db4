"""Allow ``python -m hostconverge``."""

import sys

from hostconverge.cli import main

sys.exit(main())
