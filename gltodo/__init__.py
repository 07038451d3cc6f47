"""GitLab To-Do Helper."""

__version__ = "0.1.0"
