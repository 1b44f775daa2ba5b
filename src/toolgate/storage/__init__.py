"""Policy persistence: connection wrapper, store and snapshot cache."""
