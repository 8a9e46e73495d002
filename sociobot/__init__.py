"""sociobot - Discord front end for command-line AI agents."""

__version__ = "0.1.0"
