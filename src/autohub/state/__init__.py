"""State layer.

The session table (live vehicle state) and the settings table (operator
configuration) are the single source of truth of the hub. Every write runs
the hooks registered for its key and, when the value actually changed,
mirrors it to the configured sinks.
"""
