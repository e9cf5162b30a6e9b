# SPDX-License-Identifer: GPL-3.0-or-later

import sys

from .packagist_mirror import main

sys.exit(main())
