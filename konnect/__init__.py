"""Multiplexed network proxy tunnel: tunnel client, agent, packets, metrics and feature gates."""

__version__ = "0.1.0"

__all__ = [
    "packet",
    "metrics",
    "client_metrics",
    "features",
    "conn",
    "agent_metrics",
    "endpoint",
    "tunnel",
    "agent_client",
    "clientset",
]