"""Issue lifecycle pipeline: tracker issues, worker assignment, review and merge."""

__version__ = "0.4.0"
