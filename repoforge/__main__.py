import sys

from repoforge.cli import main

sys.exit(main())
