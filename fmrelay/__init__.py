"""fmrelay - share one Last.fm poller per username across any number of WebSocket clients."""

__version__ = "0.1.0"
