"""Allow ``python -m townplanner.cli`` execution."""

import sys

from townplanner.cli.app import main

sys.exit(main())
