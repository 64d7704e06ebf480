"""GitLab merge request timeline reconstruction and batch statistics."""

__version__ = "0.1.0"
