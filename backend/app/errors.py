class PriceCacheUnavailableError(RuntimeError):
    """The price cache backend could not be read or written."""
