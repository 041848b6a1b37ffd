"""Allow ``python -m chatgw serve``."""

from .server import main

if __name__ == "__main__":
    raise SystemExit(main())
