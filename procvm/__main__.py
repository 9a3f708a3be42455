import sys

from procvm.cli import main

sys.exit(main())
