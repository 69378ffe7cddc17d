"""handoff_relay — Human-advisor handoff coordination and reliable chat delivery.

Provides:
    - Handoff request state machine (create, assign, start, complete, cancel, timeout)
    - DynamoDB persistence with Redis cache-aside reads
    - EventBridge domain events with WebSocket fan-out to users and advisors
    - SQS FIFO work queue with retry/backoff and dead-lettering
    - Lambda entry points for the HTTP API, WebSocket routes, SQS and schedules
"""

__version__ = "1.0.0"
