"""Real-time infrastructure — change events, brokers, WebSocket relay.

Learn: Events flow through two hops:
1. Services → publisher (Redis PUBLISH, or the in-process broker)
2. Transport SUBSCRIBE → sync client channel, or → WebSocket relay

This decouples event producers (services) from consumers (caches).
"""
