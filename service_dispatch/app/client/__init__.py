"""
Outbound client package for the processing API.

- processing_client: one timeout-bound attempt (credential, request,
  response interpretation).
- resilient_caller: the rate limiter / circuit breaker / retry stack around
  that attempt.
"""

from .processing_client import ProcessingApiClient
from .resilient_caller import ResilientCaller

__all__ = ["ProcessingApiClient", "ResilientCaller"]
