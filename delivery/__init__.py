"""
Delivery — sinks that receive payloads once they are due.

- LogDelivery: writes payloads to the log (development)
- WebhookDelivery: POSTs payloads to an HTTP endpoint
"""
