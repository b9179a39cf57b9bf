import sys

from burn_sync.cli import main

sys.exit(main())
