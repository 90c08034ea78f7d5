"""Video-on-demand transcoding pipeline and view analytics service."""

__version__ = "0.1.0"
