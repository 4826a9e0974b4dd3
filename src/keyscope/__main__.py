import sys

from keyscope.cli import main

sys.exit(main())
