"""Allow running as ``python -m gana``."""

from .cli import main

if __name__ == "__main__":
    main()
