"""Browser worker process.

Runs one disposable Playwright browser server and keeps its lease in Redis
alive until the dispatcher recycles it or the process is signalled.

This is the container entry point; see browser_pool.config for settings.
"""

import sys

from browser_pool.worker.__main__ import main

if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
