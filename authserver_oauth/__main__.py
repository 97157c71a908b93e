"""Entry point for ``python -m authserver_oauth``."""

import sys

from .cli import main


sys.exit(main())
