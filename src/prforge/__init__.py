"""Pull-request mutation engine for GitOps configuration repositories."""

__version__ = "0.3.0"
