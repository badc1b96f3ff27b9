"""Score parameters, seen caches, subscription filters, tracers, connection tagging and validation for gossip pubsub."""

__version__ = "0.1.0"

__all__ = [
    "score_params",
    "timecache",
    "subscription_filter",
    "subscription",
    "tracer",
    "tag_tracer",
    "validation",
]