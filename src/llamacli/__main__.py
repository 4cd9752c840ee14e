"""Allow `python -m llamacli` to launch the assistant."""

import asyncio
import sys

from llamacli.main import main

sys.exit(asyncio.run(main()))
