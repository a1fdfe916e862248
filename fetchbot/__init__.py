"""fetchbot: media-fetching bot host process."""

__version__ = "0.4.0"
