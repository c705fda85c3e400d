"""AnonVote backend: anonymous community voting"""

__version__ = "1.0.0"
