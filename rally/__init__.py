"""pr-rally: reviewer/reviewee agent rallies over a pull request."""

__version__ = "0.1.0"
