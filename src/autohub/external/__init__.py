"""Best-effort clients for the services around the hub.

Failures here are logged by callers and never roll back a table write.
"""
