"""Core types, argument lookup and condition operators."""
