"""
Dispatch Service package.

Delivers pending invoices to the external processing API through a Kafka
topic, with dead-lettering of items that cannot be processed. Key modules
include:

- app.main: FastAPI app, component wiring and lifecycle
- app.orchestration: scheduled runs that fan pending work out per province
- app.kafka: producer, dispatcher, consumer loop and dead-letter sinks
- app.client: processing API client and its resilience policies
- app.credentials: access token lease
- app.persistence: pending-work repositories
- app.domain: work items, outcomes and status interpretation
"""
