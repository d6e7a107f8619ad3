"""Network node components: metrics, rate limiting, a hashed state store, Kademlia peers, shutdown, profiling and signing."""

__version__ = "0.1.0"