import sys

from review_tracker.cli import main

sys.exit(main())
