"""
Topic Gateway components.

- core: constants and errors
- connection: transport handles, registry, locks
- membership: topic membership stores
- resilience: retry and circuit breaker
- metrics: counters and Prometheus export
- endpoints: WebSocket message handling
"""
