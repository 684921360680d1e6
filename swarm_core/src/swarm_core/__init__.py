"""BTC-Swarm: multi-agent Bitcoin derivatives trading swarm."""

__version__ = "0.1.0"
