"""Tool execution behind the gatekeeper."""
