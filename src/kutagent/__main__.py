import sys

from kutagent.cli import main

sys.exit(main())
