import sys

from opsdeploy.cli import main

sys.exit(main())
