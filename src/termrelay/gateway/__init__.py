"""Connection gateway for termrelay.

Accepts WebSocket clients, gives each one its own session, routes
client messages in and session output back out, and serves read-only
health and session listing endpoints.
"""
