"""Guardian services.

- classifier_service: deterministic content classification and rule store
- alert_service: cooldown gate, routing, notification and subscription fan-out
- audit_service: hash-chained audit trail of alert and filter changes
- monitor_service: ingest pipeline, engine facade and HTTP surface
"""
