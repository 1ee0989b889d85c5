"""Entry point for the Sluggy CLI.

Running ``python -m sluggy`` calls the main function from the cli module.
"""

from .cli import main

if __name__ == "__main__":  # pragma: no cover
    main()
