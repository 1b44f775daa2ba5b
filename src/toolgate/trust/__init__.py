"""Context trust: provider decoding, provenance lookup, classification."""
