"""Issue-to-pull-request job orchestration around an external coding agent."""

__version__ = "0.3.0"
