"""
Rules persistence service.

Stores rule documents and the tabular data they reference, and keeps
query-shaped projections of each rule for the rule engine. It provides:

- app.ids: Default public identifier derivation for stored things.
- app.models: Closed row records for projections and lookup results.
- app.adapters: HTTP client for the ClickHouse column store.
- app.persistence: Document store (PostgreSQL JSONB) and projection
  tables (ClickHouse).
- app.repository: Orchestrates both stores for store/remove/lookup.

Guidelines:
- Writes to the two stores are independent; nothing is rolled back.
- Absence is an empty result, never an exception.
- Store failures surface unchanged to the caller; no retries here.
"""
