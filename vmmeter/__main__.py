"""Allow ``python -m vmmeter``."""

from vmmeter.cli import main

if __name__ == "__main__":
    raise SystemExit(main())
