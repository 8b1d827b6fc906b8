import sys

from nido.cli import main

sys.exit(main())
