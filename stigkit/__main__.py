import sys

from stigkit.cli import main

sys.exit(main())
