"""sparecompute - lend a local inference server to a remote broker.

The agent registers with the broker, keeps a websocket open, answers
inference requests through a fallback chain of providers and prices each
result.
"""

__version__ = "0.1.0"
