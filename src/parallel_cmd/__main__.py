"""parallel-cmd 入口点。

支持: python -m parallel_cmd
"""

import sys

from .app import main

if __name__ == "__main__":
    sys.exit(main())
