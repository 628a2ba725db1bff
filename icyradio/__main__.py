import sys

from icyradio.main import main

sys.exit(main())
