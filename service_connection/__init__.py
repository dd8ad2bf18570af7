"""
Connection Service package for the Connection Gateway.

This package exposes the FastAPI application that admits clients onto the
message broker:

- app.main: Application entrypoint that wires routes and lifecycle.
- app.domain: Connect orchestration, session transitions, credentials.
- app.persistence: Session storage in PostgreSQL.
- app.topology: Per-user broker accounts, queues and permissions.
- app.messaging: Connection notifications over AMQP.
- app.adapters: HTTP clients for the users service and the broker's
  management API.

Design notes:
- Module import must not perform network calls. All IO happens in route
  handlers or the startup hook.
- Use the shared/ utilities for logging, metrics, config and errors.
"""
