"""Allow running as: python -m shepherd"""

from .cli import main

if __name__ == "__main__":
    main()
