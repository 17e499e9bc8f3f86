import sys

from hangmigrate.cli.main import main

sys.exit(main())
