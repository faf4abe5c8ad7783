"""Allow ``python -m peripheral_settings_transfer``."""

from .cli import main

if __name__ == "__main__":
    main()
