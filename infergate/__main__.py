"""Module entry point for the infergate CLI."""

from .main import main

main()
