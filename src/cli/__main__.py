"""Allow ``python -m src.cli`` execution."""

from src.cli.main import main

main()
