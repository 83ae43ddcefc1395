"""Allow `python -m clawchat` to launch the chat client."""

import asyncio
import sys

from clawchat.main import main

sys.exit(asyncio.run(main()))
