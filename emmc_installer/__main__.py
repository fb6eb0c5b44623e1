import sys

from emmc_installer.main import main


sys.exit(main())
