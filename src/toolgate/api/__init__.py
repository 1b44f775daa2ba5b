"""HTTP boundary of the gatekeeper."""
