"""
queuectl - Durable Background Job Queue

Persistent job store with atomic claims, exponential-backoff retries,
a dead letter queue and a supervised pool of command-executing workers.
"""

__version__ = "1.0.0"
