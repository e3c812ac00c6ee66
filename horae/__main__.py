"""Allow ``python -m horae``."""

from .main import main

main()
