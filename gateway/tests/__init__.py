"""Test package for gateway unit and transport tests."""

import logging

logging.getLogger("asyncio").setLevel(logging.ERROR)
