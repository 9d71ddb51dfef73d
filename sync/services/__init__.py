"""
Sync engine services.

Services:
- booking_sync_service: Outbound mirroring of appointments to Square bookings
- reconciliation_job: Single-flight batch reconciliation of Square bookings
- payment_service: Cached Square payment reads and payment processing
- inbound_event_processor: Queued handling of Square webhook events
- components: Process-wide wiring of clients, stores and services
"""
