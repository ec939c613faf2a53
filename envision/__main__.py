import sys

from envision.app import main

sys.exit(main())
