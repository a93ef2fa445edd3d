import sys

from statusline_cache.cli import main

sys.exit(main())
