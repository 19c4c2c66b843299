"""Allow `python -m matchengine`."""

import sys

from matchengine.main import main

sys.exit(main())
