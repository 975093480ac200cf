"""Multi-service gateway in front of the WeChat Official Account API."""
